"""In-memory store of knowledge agents and groups.

Answers "give me context for these agents" queries at three detail
levels and under an estimated-token budget. Every mutation bumps
``version`` and notifies change listeners; the session uses this to
invalidate the query cache, since agent identity is part of a cached
answer's correctness.
"""

from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from loguru import logger

from rlmkit.context.models import Agent, ContextLevel, Group, ScoredAgent
from rlmkit.utils.text import estimate_tokens, extract_keywords, truncate_to_tokens

# Field weights for keyword relevance
NAME_WEIGHT = 10.0
SUMMARY_WEIGHT = 5.0
KEY_POINTS_WEIGHT = 3.0
ACTION_ITEMS_WEIGHT = 3.0
TRANSCRIPT_WEIGHT = 2.0
GENERAL_WEIGHT = 1.0

# Recency boost decays to zero over 70 days
RECENCY_MAX_BOOST = 5.0
RECENCY_DECAY_DAYS = 14.0

SLICE_SEPARATOR = "\n\n---\n\n"

ChangeListener = Callable[[str], None]


class ContextStore:
    """Holds agents and groups and answers relevance queries over them."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._agents: dict[str, Agent] = {}
        self._groups: dict[str, Group] = {}
        self._listeners: list[ChangeListener] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.version = 0

    # ------------------------------------------------------------------
    # Change tracking
    # ------------------------------------------------------------------

    def on_change(self, listener: ChangeListener) -> None:
        """Register a callback invoked with a reason string on every mutation."""
        self._listeners.append(listener)

    def _changed(self, reason: str) -> None:
        self.version += 1
        logger.debug(f"Context store changed ({reason}), version={self.version}")
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception as e:
                logger.warning(f"Context change listener failed: {e}")

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def load(self, agents: Iterable[Agent], groups: Iterable[Group] = ()) -> None:
        """Replace the whole agent and group set."""
        self._agents = {agent.id: agent for agent in agents}
        self._groups = {group.id: group for group in groups}
        logger.info(f"Loaded {len(self._agents)} agents, {len(self._groups)} groups")
        self._changed("load")

    def add(self, agent: Agent) -> None:
        self._agents[agent.id] = agent
        self._changed(f"add:{agent.id}")

    def remove(self, agent_id: str) -> bool:
        if self._agents.pop(agent_id, None) is None:
            return False
        self._changed(f"remove:{agent_id}")
        return True

    def set_enabled(self, agent_id: str, enabled: bool) -> bool:
        agent = self._agents.get(agent_id)
        if agent is None:
            return False
        if agent.enabled != enabled:
            agent.enabled = enabled
            self._changed(f"{'enable' if enabled else 'disable'}:{agent_id}")
        return True

    def rename(self, agent_id: str, display_name: str) -> bool:
        agent = self._agents.get(agent_id)
        if agent is None:
            return False
        agent.display_name = display_name
        self._changed(f"rename:{agent_id}")
        return True

    def assign_group(self, agent_id: str, group_id: Optional[str]) -> bool:
        """Point an agent at a group, or clear it with ``None``.

        Unknown group ids are rejected; the reference stays weak, so a later
        ``remove_group`` simply clears it.
        """
        agent = self._agents.get(agent_id)
        if agent is None or (group_id is not None and group_id not in self._groups):
            return False
        agent.group_id = group_id
        self._changed(f"group:{agent_id}")
        return True

    def add_group(self, group: Group) -> None:
        self._groups[group.id] = group
        self._changed(f"add_group:{group.id}")

    def remove_group(self, group_id: str) -> bool:
        if self._groups.pop(group_id, None) is None:
            return False
        for agent in self._agents.values():
            if agent.group_id == group_id:
                agent.group_id = None
        self._changed(f"remove_group:{group_id}")
        return True

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def get_group(self, group_id: str) -> Optional[Group]:
        return self._groups.get(group_id)

    @property
    def agents(self) -> list[Agent]:
        return list(self._agents.values())

    @property
    def groups(self) -> list[Group]:
        return list(self._groups.values())

    def active_agents(self) -> list[Agent]:
        return [a for a in self._agents.values() if a.enabled]

    def active_ids(self) -> list[str]:
        return sorted(a.id for a in self._agents.values() if a.enabled)

    def agents_by_group(self, group_id: str, active_only: bool = True) -> list[Agent]:
        return [
            a for a in self._agents.values()
            if a.group_id == group_id and (a.enabled or not active_only)
        ]

    def ungrouped_agents(self, active_only: bool = True) -> list[Agent]:
        return [
            a for a in self._agents.values()
            if (a.group_id is None or a.group_id not in self._groups)
            and (a.enabled or not active_only)
        ]

    def active_groups(self) -> list[Group]:
        """Groups that currently contain at least one enabled agent."""
        return [g for g in self._groups.values() if self.agents_by_group(g.id)]

    # ------------------------------------------------------------------
    # Relevance
    # ------------------------------------------------------------------

    def query_agents(
        self,
        query: str,
        max_results: Optional[int] = None,
        active_only: bool = True,
        min_score: float = 0.0,
        include_recency: bool = True,
    ) -> list[ScoredAgent]:
        """Rank agents by keyword relevance to ``query``, best first.

        Ties keep load order, so ranking is stable for equal scores.
        """
        keywords = extract_keywords(query)
        candidates = self.active_agents() if active_only else self.agents
        now = self._clock()

        scored = [
            ScoredAgent(agent=agent, score=self.relevance_score(agent, keywords, now, include_recency))
            for agent in candidates
        ]
        scored = [s for s in scored if s.score >= min_score]
        scored.sort(key=lambda s: s.score, reverse=True)
        if max_results is not None:
            scored = scored[:max_results]
        return scored

    def relevance_score(
        self,
        agent: Agent,
        keywords: list[str],
        now: Optional[datetime] = None,
        include_recency: bool = True,
    ) -> float:
        score = 0.0
        name = agent.display_name.lower()
        summary = agent.summary.lower()
        key_points = agent.key_points.lower()
        action_items = agent.action_items.lower()
        transcript = agent.transcript.lower()
        text = agent.search_text

        for keyword in keywords:
            if keyword in name:
                score += NAME_WEIGHT
            if keyword in summary:
                score += SUMMARY_WEIGHT
            if keyword in key_points:
                score += KEY_POINTS_WEIGHT
            if keyword in action_items:
                score += ACTION_ITEMS_WEIGHT
            if keyword in transcript:
                score += TRANSCRIPT_WEIGHT
            if keyword in text:
                score += GENERAL_WEIGHT

        agent_date = agent.parsed_date() if include_recency else None
        if agent_date is not None:
            now = now or self._clock()
            if agent_date.tzinfo is None:
                agent_date = agent_date.replace(tzinfo=timezone.utc)
            if now.tzinfo is None:
                now = now.replace(tzinfo=timezone.utc)
            days_since = (now - agent_date).total_seconds() / 86400
            score += max(0.0, RECENCY_MAX_BOOST - days_since / RECENCY_DECAY_DAYS)

        return score

    # ------------------------------------------------------------------
    # Context slices
    # ------------------------------------------------------------------

    def context_slice(self, agent_id: str, level: ContextLevel | str = ContextLevel.STANDARD) -> str:
        """Formatted context for one agent; empty string if unknown."""
        agent = self._agents.get(agent_id)
        if agent is None:
            return ""
        level = ContextLevel(level)

        header = f"Source: {agent.display_name} ({agent.date or 'No date'})"
        lines = [header, f"Summary: {agent.summary or 'N/A'}"]
        if level in (ContextLevel.STANDARD, ContextLevel.FULL):
            lines.append(f"Key Points: {agent.key_points or 'N/A'}")
            lines.append(f"Action Items: {agent.action_items or 'N/A'}")
        if level == ContextLevel.FULL:
            lines.append(f"Sentiment: {agent.sentiment or 'N/A'}")
            if agent.transcript:
                lines.append(f"Transcript: {agent.transcript}")
        return "\n".join(lines)

    def combined_context(self, agent_ids: Iterable[str], level: ContextLevel | str = ContextLevel.STANDARD) -> str:
        slices = (self.context_slice(agent_id, level) for agent_id in agent_ids)
        return SLICE_SEPARATOR.join(s for s in slices if s)

    def combined_context_with_budget(
        self,
        agent_ids: Iterable[str],
        max_tokens: int,
        preferred_level: ContextLevel | str = ContextLevel.STANDARD,
    ) -> tuple[str, ContextLevel]:
        """Combined context at the richest level that fits ``max_tokens``.

        Falls back full -> standard -> summary. If even summaries do not
        fit, each slice is truncated to an equal share of the budget.
        """
        agent_ids = list(agent_ids)
        order = [ContextLevel.FULL, ContextLevel.STANDARD, ContextLevel.SUMMARY]
        start = order.index(ContextLevel(preferred_level))

        for level in order[start:]:
            text = self.combined_context(agent_ids, level)
            if estimate_tokens(text) <= max_tokens:
                return text, level

        slices = [s for s in (self.context_slice(a, ContextLevel.SUMMARY) for a in agent_ids) if s]
        if not slices:
            return "", ContextLevel.SUMMARY
        separator_tokens = estimate_tokens(SLICE_SEPARATOR) * (len(slices) - 1)
        share = max(1, (max_tokens - separator_tokens) // len(slices))
        logger.debug(f"Context over budget even at summary level, truncating {len(slices)} slices to {share} tokens")
        text = SLICE_SEPARATOR.join(truncate_to_tokens(s, share) for s in slices)
        return text, ContextLevel.SUMMARY

    def agent_records(self, active_only: bool = True, max_transcript_chars: int = 3000) -> list[dict]:
        """Plain-dict view of agents for sandboxed programs, transcripts clipped."""
        records = []
        for agent in (self.active_agents() if active_only else self.agents):
            record = agent.to_dict()
            if len(agent.transcript) > max_transcript_chars:
                record["transcript"] = agent.transcript[:max_transcript_chars] + "...[truncated]"
            records.append(record)
        return records

    def stats(self) -> dict:
        return {
            "total_agents": len(self._agents),
            "active_agents": len(self.active_agents()),
            "total_groups": len(self._groups),
            "version": self.version,
            "agent_ids": list(self._agents),
        }

    @staticmethod
    def keyword_coverage(agent: Agent, query: str) -> float:
        """Fraction of the query's keywords found anywhere in the agent's text."""
        keywords = extract_keywords(query)
        if not keywords:
            return 0.0
        text = agent.search_text
        return sum(1 for k in keywords if k in text) / len(keywords)
