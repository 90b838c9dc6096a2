"""Query Cache - LRU cache of pipeline results.

Keys combine the execution mode, the sorted ids of the enabled agents and
a normalized form of the query text, so any change to the agent set
produces a different key. Expiry is lazy: entries are checked when they
are read. Fuzzy matching is opt-in and only compares entries with the
same mode and agent set.
"""

import copy
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from loguru import logger

from rlmkit.errors import CacheCorrupt
from rlmkit.rlm.models import PipelineResult
from rlmkit.utils.text import string_similarity

_FILLER_RE = re.compile(r"\b(please|can you|could you|would you)\b")
_SPACE_RE = re.compile(r"\s+")
_TRAILING_RE = re.compile(r"[?!.]+$")


@dataclass
class CacheEntry:
    key: str
    mode: str
    agent_key: str
    normalized_query: str
    value: PipelineResult
    created_at: float
    hits: int = 0


class QueryCache:
    """LRU + TTL cache keyed by (mode, agent set, normalized query)."""

    def __init__(
        self,
        max_entries: int = 50,
        ttl: float = 300.0,
        enable_fuzzy: bool = False,
        fuzzy_threshold: float = 0.85,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.max_entries = max_entries
        self.ttl = ttl
        self.enable_fuzzy = enable_fuzzy
        self.fuzzy_threshold = fuzzy_threshold
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0,
            "fuzzy_hits": 0,
            "corrupt": 0,
        }

    @staticmethod
    def normalize_query(query: str) -> str:
        text = query.lower()
        text = _FILLER_RE.sub(" ", text)
        text = _SPACE_RE.sub(" ", text).strip()
        return _TRAILING_RE.sub("", text).strip()

    @staticmethod
    def agent_key(agent_ids: Iterable[str]) -> str:
        return ",".join(sorted(agent_ids))

    def make_key(self, query: str, agent_ids: Iterable[str], mode: str = "auto") -> str:
        return f"{mode}:{self.agent_key(agent_ids)}:{self.normalize_query(query)}"

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at >= self.ttl

    def _expire(self, key: str) -> None:
        self._entries.pop(key, None)
        self._stats["expirations"] += 1

    def _read(self, entry: CacheEntry) -> PipelineResult:
        if not isinstance(entry.value, PipelineResult) or not isinstance(entry.value.response, str):
            raise CacheCorrupt(f"Unreadable cache entry {entry.key[:60]}")
        result = copy.deepcopy(entry.value)
        result.cached = True
        return result

    def get(self, query: str, agent_ids: Iterable[str], mode: str = "auto") -> Optional[PipelineResult]:
        """Cached result for this query and agent set, or ``None``.

        A corrupt entry is dropped and reported as a miss.
        """
        agent_ids = list(agent_ids)
        key = self.make_key(query, agent_ids, mode)
        now = self._clock()

        entry = self._entries.get(key)
        if entry is not None and self._expired(entry, now):
            self._expire(key)
            entry = None

        fuzzy = False
        if entry is None and self.enable_fuzzy:
            entry = self._fuzzy_match(self.normalize_query(query), self.agent_key(agent_ids), mode, now)
            fuzzy = entry is not None

        if entry is None:
            self._stats["misses"] += 1
            logger.debug(f"Cache miss: {key[:80]}")
            return None

        try:
            result = self._read(entry)
        except CacheCorrupt as e:
            logger.warning(f"{e.message}; treating as miss")
            self._entries.pop(entry.key, None)
            self._stats["corrupt"] += 1
            self._stats["misses"] += 1
            return None

        self._entries.move_to_end(entry.key)
        entry.hits += 1
        self._stats["hits"] += 1
        if fuzzy:
            self._stats["fuzzy_hits"] += 1
        logger.debug(f"Cache {'fuzzy ' if fuzzy else ''}hit: {entry.key[:80]}")
        return result

    def _fuzzy_match(self, normalized: str, agent_key: str, mode: str, now: float) -> Optional[CacheEntry]:
        best: Optional[CacheEntry] = None
        best_score = 0.0
        for key, entry in list(self._entries.items()):
            if entry.mode != mode or entry.agent_key != agent_key:
                continue
            if self._expired(entry, now):
                self._expire(key)
                continue
            score = string_similarity(normalized, entry.normalized_query)
            if score >= self.fuzzy_threshold and score > best_score:
                best, best_score = entry, score
        return best

    def set(self, query: str, agent_ids: Iterable[str], result: PipelineResult, mode: str = "auto") -> None:
        agent_ids = list(agent_ids)
        key = self.make_key(query, agent_ids, mode)
        self._entries[key] = CacheEntry(
            key=key,
            mode=mode,
            agent_key=self.agent_key(agent_ids),
            normalized_query=self.normalize_query(query),
            value=copy.deepcopy(result),
            created_at=self._clock(),
        )
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._stats["evictions"] += 1
            logger.debug(f"Cache evicted: {evicted[:80]}")

    def invalidate_all(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        if count:
            logger.debug(f"Cache invalidated ({count} entries)")
        return count

    def invalidate_for_agents(self, agent_ids: Iterable[str]) -> int:
        """Drop entries whose agent set includes any of ``agent_ids``."""
        targets = set(agent_ids)
        stale = [
            key for key, entry in self._entries.items()
            if targets & set(filter(None, entry.agent_key.split(",")))
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def prune_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in expired:
            self._expire(key)
        return len(expired)

    def stats(self) -> dict:
        lookups = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "hit_rate": self._stats["hits"] / lookups if lookups else 0.0,
        }
