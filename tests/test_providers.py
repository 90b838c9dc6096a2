"""Tests for the provider adapter and LiteLLM response parsing."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from rlmkit.config.schema import ProviderConfig
from rlmkit.errors import UpstreamCallFailed
from rlmkit.providers import LiteLLMProvider, LLMResponse, as_call_fn


class TestAsCallFn:
    """Test adapting a provider to the pipeline call signature."""

    @pytest.mark.asyncio
    async def test_passes_prompt_and_max_tokens(self):
        """Test the call arguments."""
        provider = MagicMock()
        provider.complete = AsyncMock(return_value=LLMResponse(content="hi", usage={"prompt_tokens": 7}))
        call = as_call_fn(provider, model="test/model", temperature=0.1)

        response = await call("system text", "user text", {"max_tokens": 123})

        assert response.content == "hi"
        assert response.input_tokens == 7
        assert provider.complete.call_args.args == ("system text", "user text")
        kwargs = provider.complete.call_args.kwargs
        assert kwargs["max_tokens"] == 123
        assert kwargs["model"] == "test/model"
        assert kwargs["temperature"] == 0.1

    @pytest.mark.asyncio
    async def test_provider_error_raises(self):
        """Test that an error response raises UpstreamCallFailed."""
        provider = MagicMock()
        provider.complete = AsyncMock(
            return_value=LLMResponse(content="Upstream call to x failed: rate limited", finish_reason="error")
        )
        call = as_call_fn(provider)

        with pytest.raises(UpstreamCallFailed) as exc:
            await call("s", "u", {"sub_query_id": "sq-2", "depth": 1})
        assert exc.value.sub_query_id == "sq-2"
        assert "rate limited" in exc.value.message


class TestLiteLLMProvider:
    """Test the litellm-backed provider."""

    def test_parse_response(self):
        """Test parsing a completion."""
        provider = LiteLLMProvider()
        raw = SimpleNamespace(
            model="anthropic/claude-sonnet-4-5",
            choices=[SimpleNamespace(message=SimpleNamespace(content="answer"), finish_reason="stop")],
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=4, total_tokens=14),
        )
        response = provider._parse_response(raw)
        assert response.content == "answer"
        assert response.usage["total_tokens"] == 14
        assert response.output_tokens == 4
        assert response.model == "anthropic/claude-sonnet-4-5"
        assert not response.failed

    @pytest.mark.asyncio
    async def test_request_shape(self, monkeypatch):
        """Test the litellm request."""
        captured = {}

        async def fake_acompletion(**kwargs):
            captured.update(kwargs)
            return SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(content="ok"), finish_reason=None)],
                usage=None,
            )

        monkeypatch.setattr("rlmkit.providers.litellm_provider.acompletion", fake_acompletion)
        response = await LiteLLMProvider(api_key="k").complete("sys", "user", max_tokens=50)

        assert captured["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "user"},
        ]
        assert captured["num_retries"] == 0
        assert captured["api_key"] == "k"
        assert "api_base" not in captured
        assert response.finish_reason == "stop"
        assert response.model == "anthropic/claude-sonnet-4-5"

    @pytest.mark.asyncio
    async def test_errors_become_error_responses(self, monkeypatch):
        """Test that litellm errors become error responses."""
        async def broken(**kwargs):
            raise ConnectionError("network down")

        monkeypatch.setattr("rlmkit.providers.litellm_provider.acompletion", broken)
        response = await LiteLLMProvider(api_key="k").complete("s", "hi")

        assert response.failed
        assert "network down" in response.content

    def test_from_config(self):
        """Test building a provider from config."""
        config = ProviderConfig(model="openrouter/some-model", api_key="", extra_headers={"X-Title": "rlmkit"})
        provider = LiteLLMProvider.from_config(config)
        assert provider.get_default_model() == "openrouter/some-model"
        assert provider.api_key is None
        assert provider.extra_headers == {"X-Title": "rlmkit"}

        assert LiteLLMProvider.from_config(config, model="openai/gpt-4o").default_model == "openai/gpt-4o"
