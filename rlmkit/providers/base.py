"""Model provider boundary.

The pipeline itself only knows a call function with the shape
``(system_prompt, user_content, context) -> LLMResponse | str``.
Providers implement ``complete``; ``as_call_fn`` turns a provider into
that call function.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from rlmkit.errors import UpstreamCallFailed


@dataclass
class LLMResponse:
    content: str | None
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)
    model: str | None = None  # Model that actually answered, when reported

    @property
    def input_tokens(self) -> int:
        return int(self.usage.get("prompt_tokens", 0))

    @property
    def output_tokens(self) -> int:
        return int(self.usage.get("completion_tokens", 0))

    @property
    def failed(self) -> bool:
        return self.finish_reason == "error"


class LLMProvider(ABC):
    """A chat-completion backend.

    ``complete`` reports failures as an ``LLMResponse`` with
    ``finish_reason="error"``; the pipeline's retry policy decides what to
    do with them.
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_content: str,
        model: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.3,
    ) -> LLMResponse:
        """Answer one assembled prompt."""

    @abstractmethod
    def get_default_model(self) -> str:
        pass


def as_call_fn(
    provider: LLMProvider,
    model: str | None = None,
    temperature: float = 0.3,
) -> Callable[[str, str, dict[str, Any]], Awaitable[LLMResponse]]:
    """Wrap ``provider`` as a pipeline call function.

    ``context["max_tokens"]`` caps the answer. A provider-reported failure
    is raised as ``UpstreamCallFailed`` tagged with the sub-query id and depth.
    """

    async def call(system_prompt: str, user_content: str, context: dict[str, Any]) -> LLMResponse:
        response = await provider.complete(
            system_prompt,
            user_content,
            model=model,
            max_tokens=context.get("max_tokens", 1000),
            temperature=temperature,
        )
        if response.failed:
            raise UpstreamCallFailed(
                response.content or "Provider error",
                depth=context.get("depth"),
                sub_query_id=context.get("sub_query_id"),
            )
        return response

    return call
