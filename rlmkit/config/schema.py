"""Configuration schema using Pydantic."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel, to_snake
from pydantic_settings import BaseSettings


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MemoryConfig(Base):
    """Signal-weighted memory configuration.

    ``mode`` controls whether retrieved slices reach the live prompt:
    ``off`` skips capture and retrieval, ``shadow`` computes retrieval and
    records it in stats without using it, ``live`` uses it.
    """
    mode: Literal["off", "shadow", "live"] = "live"
    similarity_threshold: float = 0.6  # Dedup threshold for slice merging
    max_slices_per_agent: int = 2
    max_slices_per_tag: int = 2
    top_k: int = 6
    candidate_limit: int = 40  # Stage A cap
    max_slices: int = 200  # Stored slices, superseded ones evicted first
    recency_window_days: int = 30
    redundancy_penalty: float = 0.15  # Per recent retrieval
    working_window_turns: int = 2
    assistant_summary_chars: int = 320
    state_block_items: int = 4  # Per slice type
    episode_budget_threshold: float = 0.8  # Fraction of the prompt cap
    episode_tool_call_threshold: int = 8
    episode_depth_threshold: int = 2


class PromptConfig(Base):
    """Token budget for assembled prompts (estimated, not exact)."""
    max_prompt_tokens: int = 8000
    response_reserve: int = 1000
    state_block_tokens: int = 800
    working_window_tokens: int = 600
    slices_tokens: int = 1600
    local_context_tokens: int = 4000
    state_block_floor: int = 200
    chars_per_token: int = 4

    @model_validator(mode="after")
    def _reserve_fits(self) -> "PromptConfig":
        if self.response_reserve >= self.max_prompt_tokens:
            raise ValueError(
                f"response_reserve ({self.response_reserve}) must be below max_prompt_tokens ({self.max_prompt_tokens})"
            )
        return self


class SandboxConfig(Base):
    """Recursive-call handshake for sandboxed sub-queries.

    ``blocking``: ``auto`` uses the blocking handshake whenever the program
    runs off the event-loop thread, ``always`` requires it, ``never`` forces
    the placeholder fallback.
    """
    blocking: Literal["auto", "always", "never"] = "auto"
    sub_call_timeout: float = 60.0
    placeholder_prefix: str = "SUB_LM_PENDING"


class ProviderConfig(Base):
    """Model endpoint used by the command line."""
    model: str = "anthropic/claude-sonnet-4-5"
    api_key: str = ""
    api_base: str | None = None
    extra_headers: dict[str, str] = Field(default_factory=dict)
    temperature: float = 0.3


class RLMConfig(BaseSettings):
    """Root configuration for rlmkit."""
    # Decomposition
    max_sub_queries: int = 25
    enable_group_decomposition: bool = True
    group_min_groups: int = 2
    group_min_agents: int = 6
    enable_debate_phase: bool = True
    debate_complexity_threshold: Literal["simple", "moderate", "complex"] = "moderate"
    debate_min_perspectives: int = 3
    context_level: Literal["summary", "standard", "full"] = "standard"

    # Execution
    max_concurrent: int = 4
    max_depth: int = 3
    tokens_per_sub_query: int = 4000
    call_timeout: float = 60.0  # Per sub-query, seconds
    plan_timeout: float = 300.0
    reduce_timeout: float = 120.0
    retry_attempts: int = 2  # Retries after the first attempt
    retry_delay: float = 1.0
    retry_backoff: float = 2.0
    retry_jitter: float = 0.1

    # Aggregation
    enable_early_stop: bool = True
    early_stop_max_slices: int = 2
    early_stop_min_relevance: float = 0.6  # Normalized relevance of the weakest slice
    dedup_threshold: float = 0.7
    max_final_length: int = 4000

    # Cache
    cache_max_entries: int = 50
    cache_ttl: float = 300.0  # Seconds
    enable_fuzzy_cache: bool = False
    fuzzy_threshold: float = 0.85

    # Events
    event_buffer_size: int = 256

    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    prompt: PromptConfig = Field(default_factory=PromptConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)

    model_config = ConfigDict(
        env_prefix="RLMKIT_",
        env_nested_delimiter="__"
    )

    @model_validator(mode="after")
    def _check_limits(self) -> "RLMConfig":
        if self.max_depth < 1:
            raise ValueError("max_depth must be at least 1; depth 0 is the top-level query")
        if self.prompt.response_reserve >= self.tokens_per_sub_query:
            raise ValueError(
                f"prompt.response_reserve ({self.prompt.response_reserve}) must be below "
                f"tokens_per_sub_query ({self.tokens_per_sub_query})"
            )
        return self

    @classmethod
    def from_options(cls, options: dict[str, Any] | None = None) -> "RLMConfig":
        """Build a config from a dict that may use camelCase keys (``maxSubQueries``)."""
        return cls(**normalize_keys(options or {}))


def normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Convert top-level camelCase keys to snake_case.

    Nested sections accept both spellings through their aliases.
    """
    normalized: dict[str, Any] = {}
    for key, value in data.items():
        # cacheTTL -> cache_ttl
        snake = to_snake(key)
        normalized[snake] = value
    return normalized
