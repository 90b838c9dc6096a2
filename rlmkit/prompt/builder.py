"""Token-budgeted prompt assembly.

Sections are rendered in a fixed order (system, task, state block,
working window, retrieved slices, local context), each capped on its
own. When the total still exceeds the budget, sections are trimmed in
this order:

1. retrieved slices, lowest score first
2. working window
3. local context (truncated, then removed)
4. state block, down to its floor

If that is not enough the builder falls back to system + task + state
block only and records the fallback. Token counts are estimates; the
response reserve absorbs the estimation error.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional

from loguru import logger

from rlmkit.config.schema import PromptConfig
from rlmkit.errors import BudgetOverflow
from rlmkit.memory.models import ScoredSlice, StateBlock, WorkingWindow
from rlmkit.utils.text import estimate_tokens, truncate_to_tokens

DEFAULT_SYSTEM_INSTRUCTIONS = (
    "You are a helpful analyst answering questions about a set of summarized sources.\n"
    "Use only the provided context. Cite sources by name when you rely on them."
)


@dataclass
class PromptSection:
    label: str
    content: str
    tokens: int = 0


@dataclass
class BuiltPrompt:
    """A rendered prompt plus the bookkeeping of how it was fit."""
    system_prompt: str
    user_content: str
    sections: list[PromptSection] = field(default_factory=list)
    token_estimate: int = 0
    budget: int = 0
    trimmed: list[str] = field(default_factory=list)
    fallback: bool = False  # State-block-only fallback was used
    overflow: bool = False  # Required sections had to be cut

    @property
    def prompt(self) -> str:
        return f"{self.system_prompt}\n\n{self.user_content}"

    def section(self, label: str) -> Optional[PromptSection]:
        for section in self.sections:
            if section.label == label:
                return section
        return None


class PromptBuilder:
    """Assembles prompts that never exceed the configured estimated-token cap."""

    def __init__(self, config: Optional[PromptConfig] = None):
        self.config = config or PromptConfig()
        self.fallback_count = 0
        self.overflow_count = 0

    def _estimate(self, text: str) -> int:
        return estimate_tokens(text, self.config.chars_per_token)

    def _truncate(self, text: str, max_tokens: int) -> str:
        return truncate_to_tokens(text, max_tokens, self.config.chars_per_token)

    def budget_for(self, max_tokens: Optional[int] = None) -> int:
        """Prompt cap after holding back the response reserve.

        Raises:
            BudgetOverflow: the reserve leaves no room for a prompt.
        """
        total = max_tokens or self.config.max_prompt_tokens
        if total <= self.config.response_reserve:
            raise BudgetOverflow(
                f"A {total}-token budget leaves no room after the {self.config.response_reserve}-token response reserve"
            )
        return total - self.config.response_reserve

    @staticmethod
    def _render_slices(slices: list[ScoredSlice]) -> str:
        return "\n".join(
            f"{i}. [{item.slice.type.value}] {item.slice.text}"
            for i, item in enumerate(slices, start=1)
        )

    def _render(
        self,
        system: str,
        task: str,
        state: str,
        window: str,
        slices: list[ScoredSlice],
        local: str,
    ) -> tuple[str, list[PromptSection]]:
        sections = [PromptSection("Task", task)]
        if state:
            sections.append(PromptSection("State Block", state))
        if window:
            sections.append(PromptSection("Working Window", window))
        if slices:
            sections.append(PromptSection("Retrieved Slices", self._render_slices(slices)))
        if local:
            sections.append(PromptSection("Local Context", local))
        for section in sections:
            section.tokens = self._estimate(section.content)
        user_content = "\n\n".join(f"### {s.label}\n{s.content}" for s in sections)
        return user_content, sections

    def _total(self, system: str, user_content: str) -> int:
        return self._estimate(system) + self._estimate(user_content)

    def build(
        self,
        task: str,
        system_instructions: str = DEFAULT_SYSTEM_INSTRUCTIONS,
        state_block: Optional[StateBlock] = None,
        working_window: Optional[WorkingWindow] = None,
        slices: Optional[list[ScoredSlice]] = None,
        local_context: str = "",
        max_tokens: Optional[int] = None,
    ) -> BuiltPrompt:
        """Render a prompt whose estimated size is at most ``budget_for(max_tokens)``."""
        cfg = self.config
        cap = self.budget_for(max_tokens)
        trimmed: list[str] = []

        system = system_instructions.strip()
        state = self._truncate(state_block.render(), cfg.state_block_tokens) if state_block else ""
        window = self._truncate(working_window.render(), cfg.working_window_tokens) if working_window else ""
        local = self._truncate(local_context, cfg.local_context_tokens) if local_context else ""

        # Highest score first, admitted while under the section cap
        chosen: list[ScoredSlice] = []
        for item in sorted(slices or [], key=lambda s: s.score, reverse=True):
            if self._estimate(self._render_slices(chosen + [item])) > cfg.slices_tokens:
                break
            chosen.append(item)

        def over(**override) -> int:
            parts = {"system": system, "task": task, "state": state, "window": window, "slices": chosen, "local": local}
            parts.update(override)
            user_content, _ = self._render(
                parts["system"], parts["task"], parts["state"], parts["window"], parts["slices"], parts["local"]
            )
            return self._total(parts["system"], user_content) - cap

        while over() > 0 and chosen:
            dropped = chosen.pop()
            trimmed.append(f"slice:{dropped.slice.id}")

        if over() > 0 and window:
            window = ""
            trimmed.append("working_window")

        if over() > 0 and local:
            local = self._shrink(local, lambda t: over(local=t), floor=0)
            trimmed.append("local_context")

        if over() > 0 and state:
            state = self._shrink(state, lambda t: over(state=t), floor=cfg.state_block_floor)
            trimmed.append("state_block")

        fallback = False
        overflow = False
        if over() > 0:
            fallback = True
            self.fallback_count += 1
            chosen, window, local = [], "", ""
            if state:
                state = self._shrink(state, lambda t: over(state=t, slices=[], window="", local=""), floor=0)
            logger.warning(f"Prompt fallback to state block only (cap={cap})")

        if over() > 0:
            # Even the required sections do not fit
            overflow = True
            self.overflow_count += 1
            task = self._shrink(task, lambda t: over(task=t), floor=0)
            if over() > 0:
                system = self._shrink(system, lambda t: over(system=t), floor=0)
            err = BudgetOverflow(f"Required prompt sections exceed {cap} tokens")
            logger.warning(f"{err.message}; truncated to fit")

        user_content, sections = self._render(system, task, state, window, chosen, local)
        total = self._total(system, user_content)
        if trimmed:
            logger.debug(f"Prompt trimmed to {total}/{cap} tokens: {', '.join(trimmed)}")

        return BuiltPrompt(
            system_prompt=system,
            user_content=user_content,
            sections=sections,
            token_estimate=total,
            budget=cap,
            trimmed=trimmed,
            fallback=fallback,
            overflow=overflow,
        )

    def _shrink(self, text: str, over_with: Callable[[str], int], floor: int) -> str:
        """Cut ``text`` until ``over_with(text)`` is non-positive or it reaches ``floor`` tokens."""
        while text and over_with(text) > 0:
            current = self._estimate(text)
            if current <= floor:
                break
            target = max(floor, current - over_with(text) - 1)
            shorter = self._truncate(text, target)
            if shorter == text:
                shorter = text[: max(0, len(text) - self.config.chars_per_token)]
            text = shorter
        return text
