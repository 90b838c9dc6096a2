"""Per-session state: agents, memory, cache, events and counters."""

import asyncio
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from loguru import logger

from rlmkit.config.schema import RLMConfig
from rlmkit.context.store import ContextStore
from rlmkit.memory.store import MemoryStore
from rlmkit.rlm.cache import QueryCache
from rlmkit.rlm.events import EventChannel


@dataclass
class SessionStats:
    queries: int = 0
    cache_hits: int = 0
    sub_queries_executed: int = 0
    failed_sub_queries: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    recursion_calls: int = 0
    recursion_limit_hits: int = 0
    early_stops: int = 0
    prompt_fallbacks: int = 0
    plan_timeouts: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class Session:
    """Owns the mutable state one pipeline works against.

    The memory store is only written under ``memory_lock``; concurrent
    sub-queries read it but never mutate it. Any change to the agent set
    invalidates the query cache.
    """

    def __init__(
        self,
        config: Optional[RLMConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        cache_clock: Optional[Callable[[], float]] = None,
    ):
        self.id = f"session-{uuid.uuid4().hex[:8]}"
        self.config = config or RLMConfig()
        self.store = ContextStore(clock=clock)
        self.memory = MemoryStore(self.config.memory, clock=clock)
        self.cache = QueryCache(
            max_entries=self.config.cache_max_entries,
            ttl=self.config.cache_ttl,
            enable_fuzzy=self.config.enable_fuzzy_cache,
            fuzzy_threshold=self.config.fuzzy_threshold,
            clock=cache_clock,
        )
        self.events = EventChannel(self.config.event_buffer_size)
        self.stats = SessionStats()
        self.memory_lock = asyncio.Lock()
        self.store.on_change(self._on_agents_changed)

    def _on_agents_changed(self, reason: str) -> None:
        dropped = self.cache.invalidate_all()
        if dropped:
            logger.debug(f"Agent set changed ({reason}); dropped {dropped} cached answers")

    def reset(self) -> None:
        """Forget memory, cache and counters; keep the loaded agents."""
        self.memory.reset()
        self.cache.invalidate_all()
        self.stats = SessionStats()

    def snapshot(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            **self.stats.to_dict(),
            "events_dropped": self.events.dropped,
            "context": self.store.stats(),
            "cache": self.cache.stats(),
            "memory": self.memory.stats(),
        }
