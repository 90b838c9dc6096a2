"""LLM provider abstraction module."""

from rlmkit.providers.base import LLMProvider, LLMResponse, as_call_fn
from rlmkit.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider", "as_call_fn"]
