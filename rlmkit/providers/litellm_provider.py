"""LiteLLM-backed provider.

One model string with a provider prefix (``anthropic/...``,
``openrouter/...``, ``openai/...``) selects the backend.
"""

from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from rlmkit.config.schema import ProviderConfig
from rlmkit.providers.base import LLMProvider, LLMResponse


class LiteLLMProvider(LLMProvider):
    """Sends each sub-query prompt as a two-message chat completion.

    Retries are left to the pipeline, so LiteLLM's own retrying is turned
    off per request.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "anthropic/claude-sonnet-4-5",
        extra_headers: dict[str, str] | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = dict(extra_headers or {})

        litellm.suppress_debug_info = True
        # Providers reject parameters they do not know
        litellm.drop_params = True

    @classmethod
    def from_config(cls, config: ProviderConfig, model: str | None = None) -> "LiteLLMProvider":
        """Build a provider from the ``provider`` config section; ``model`` overrides it."""
        return cls(
            api_key=config.api_key or None,
            api_base=config.api_base,
            default_model=model or config.model,
            extra_headers=config.extra_headers,
        )

    async def complete(
        self,
        system_prompt: str,
        user_content: str,
        model: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.3,
    ) -> LLMResponse:
        target = model or self.default_model
        request: dict[str, Any] = {
            "model": target,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "num_retries": 0,
        }
        optional = {"api_key": self.api_key, "api_base": self.api_base, "extra_headers": self.extra_headers}
        request.update({key: value for key, value in optional.items() if value})

        try:
            raw = await acompletion(**request)
        except Exception as e:
            logger.warning(f"{target} request failed: {e}")
            return LLMResponse(content=f"Upstream call to {target} failed: {e}", finish_reason="error", model=target)
        return self._parse_response(raw, target)

    def _parse_response(self, raw: Any, requested_model: str | None = None) -> LLMResponse:
        choice = raw.choices[0]
        usage = getattr(raw, "usage", None)
        counts: dict[str, int] = {}
        if usage:
            for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
                counts[key] = getattr(usage, key, 0) or 0

        return LLMResponse(
            content=choice.message.content,
            finish_reason=choice.finish_reason or "stop",
            usage=counts,
            model=getattr(raw, "model", None) or requested_model,
        )

    def get_default_model(self) -> str:
        return self.default_model
