"""Tests for configuration parsing and loading."""

import json

import pytest
from pydantic import ValidationError

from rlmkit.config.loader import load_config, save_config
from rlmkit.config.schema import MemoryConfig, PromptConfig, RLMConfig


class TestRLMConfig:
    """Test building configs from options and environment."""

    def test_defaults(self):
        """Test default values."""
        config = RLMConfig()
        assert config.max_sub_queries == 25
        assert config.max_depth == 3
        assert config.memory.mode == "live"
        assert config.sandbox.blocking == "auto"

    def test_from_options_accepts_camel_case(self):
        """Test camelCase option keys."""
        config = RLMConfig.from_options({"maxSubQueries": 10, "memory": {"workingWindowTurns": 3}})
        assert config.max_sub_queries == 10
        assert config.memory.working_window_turns == 3

    def test_from_options_accepts_snake_case(self):
        """Test snake_case option keys."""
        config = RLMConfig.from_options({"max_concurrent": 2, "prompt": {"response_reserve": 500}})
        assert config.max_concurrent == 2
        assert config.prompt.response_reserve == 500

    def test_environment_overrides(self, monkeypatch):
        """Test RLMKIT_ environment overrides."""
        monkeypatch.setenv("RLMKIT_MAX_DEPTH", "5")
        monkeypatch.setenv("RLMKIT_MEMORY__MODE", "shadow")
        config = RLMConfig()
        assert config.max_depth == 5
        assert config.memory.mode == "shadow"


class TestLoader:
    """Test loading and saving config files."""

    def test_missing_file_gives_defaults(self, tmp_path):
        """Test loading a missing file."""
        config = load_config(tmp_path / "nope.json")
        assert config.max_sub_queries == 25

    def test_invalid_json_gives_defaults(self, tmp_path):
        """Test loading malformed JSON."""
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert load_config(path).max_depth == 3

    def test_invalid_values_give_defaults(self, tmp_path):
        """Test loading values that fail validation."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"maxDepth": "lots"}))
        assert load_config(path).max_depth == 3

    def test_save_and_load(self, tmp_path):
        """Test saving then loading a config file."""
        path = tmp_path / "nested" / "config.json"
        save_config(RLMConfig(max_sub_queries=7, memory=MemoryConfig(mode="shadow")), path)

        data = json.loads(path.read_text())
        assert data["memory"]["workingWindowTurns"] == 2

        loaded = load_config(path)
        assert loaded.max_sub_queries == 7
        assert loaded.memory.mode == "shadow"

    def test_provider_section(self, tmp_path):
        """Test the provider section."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"provider": {"model": "openai/gpt-4o-mini", "apiBase": "http://localhost:4000"}}))
        config = load_config(path)
        assert config.provider.model == "openai/gpt-4o-mini"
        assert config.provider.api_base == "http://localhost:4000"
        assert config.provider.temperature == 0.3

    def test_save_omits_api_key(self, tmp_path):
        """Test that saved files never carry the API key."""
        config = RLMConfig.from_options({"provider": {"apiKey": "sk-secret", "model": "openai/gpt-4o"}})
        assert config.provider.api_key == "sk-secret"

        path = save_config(config, tmp_path / "config.json")
        data = json.loads(path.read_text())
        assert "apiKey" not in data["provider"]
        assert load_config(path).provider.model == "openai/gpt-4o"


class TestValidation:
    """Test cross-field limits."""

    def test_reserve_must_fit_in_sub_query_budget(self):
        """A response reserve at or above tokens_per_sub_query is rejected."""
        with pytest.raises(ValidationError):
            RLMConfig.from_options({"tokensPerSubQuery": 800})
        with pytest.raises(ValidationError):
            RLMConfig(tokens_per_sub_query=2000, prompt=PromptConfig(response_reserve=2000))

        config = RLMConfig(tokens_per_sub_query=800, prompt=PromptConfig(response_reserve=200))
        assert config.tokens_per_sub_query == 800

    def test_reserve_must_fit_in_prompt_cap(self):
        """PromptConfig alone also checks the reserve against its own cap."""
        with pytest.raises(ValidationError):
            PromptConfig(max_prompt_tokens=500)

    def test_depth_ceiling_must_allow_top_level(self):
        """max_depth 0 would refuse even the top-level query."""
        with pytest.raises(ValidationError):
            RLMConfig(max_depth=0)

    def test_bad_budget_in_file_falls_back_to_defaults(self, tmp_path):
        """An inconsistent budget in the config file is logged and ignored."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"tokensPerSubQuery": 800}))
        assert load_config(path).tokens_per_sub_query == 4000
