"""Signal-weighted memory for long-running sessions.

Each completed turn is broken into atomic slices that are deduplicated
and merged rather than appended:

- entities collapse onto a canonical alias
- a repeated decision moves tentative -> confirmed
- a similar action supersedes the older one (latest wins, linked both ways)
- a similar risk unifies with the existing one and raises its confidence

Retrieval is two-stage: a cheap filter on tag/entity/source-agent/recency,
then scoring with diversity caps. Focus episodes bound growth: on
completion their raw events and covered turns are dropped and only a
frozen summary plus derived slices remain.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from loguru import logger

from rlmkit.config.schema import MemoryConfig
from rlmkit.memory.extraction import (
    ExtractedSlice,
    canonical_entity,
    decision_status_hint,
    extract_entities,
    extract_slices,
    infer_query_tags,
    summarize_response,
)
from rlmkit.memory.models import (
    CompletedEpisode,
    DecisionStatus,
    EpisodeEvent,
    EpisodeSummary,
    EpisodeTrigger,
    FocusEpisode,
    MemorySlice,
    RetrievalResult,
    ScoredSlice,
    SliceType,
    StateBlock,
    Turn,
    WorkingWindow,
)
from rlmkit.utils.text import content_hash, estimate_tokens, extract_keywords, jaccard_similarity

# Stage B weights
TAG_WEIGHT = 2.0
ENTITY_WEIGHT = 2.0
RECENCY_WEIGHT = 1.5
IMPORTANCE_WEIGHT = 1.2
KEYWORD_WEIGHT = 0.5

CONFIDENCE_STEP = 0.1
MAX_CONFIDENCE = 1.0


def text_similarity(a: str, b: str) -> float:
    """Similarity used for merge decisions."""
    return jaccard_similarity(a, b, min_length=3)


class MemoryStore:
    """Captures, merges and retrieves memory slices for one session."""

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or MemoryConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.reset()

    def reset(self) -> None:
        self._slices: list[MemorySlice] = []
        self._aliases: dict[str, str] = {}  # canonical key -> display name
        self.history: list[Turn] = []
        self.working_window = WorkingWindow()
        self.episodes: list[CompletedEpisode] = []
        self.active_episode: Optional[FocusEpisode] = None
        self._tail_start = 0  # First history index not yet covered by an episode
        self._stats: dict[str, Any] = {
            "shadow_retrievals": 0,
            "live_retrievals": 0,
            "merged": 0,
            "evicted": 0,
            "last_captured_at": None,
        }

    @property
    def mode(self) -> str:
        return self.config.mode

    @property
    def slices(self) -> list[MemorySlice]:
        return list(self._slices)

    def active_slices(self) -> list[MemorySlice]:
        return [s for s in self._slices if s.active]

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def record_turn(
        self,
        query: str,
        response: str,
        cached: bool = False,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Turn:
        """Append a turn to history and refresh the working window.

        Runs for cached answers too; slice capture is separate.
        """
        turn = Turn(
            query=query,
            response=response,
            timestamp=self._clock(),
            cached=cached,
            metadata=dict(metadata or {}),
        )
        self.history.append(turn)

        if query:
            self.working_window.user_turns = (
                [query] + self.working_window.user_turns
            )[: self.config.working_window_turns]
        if response:
            self.working_window.assistant_summary = summarize_response(
                response, self.config.assistant_summary_chars
            )

        if self.active_episode is not None:
            self.record_event("user", query)
            self.record_event("assistant", response)
        return turn

    def capture_turn(
        self,
        query: str,
        response: str,
        source_agent_ids: Optional[list[str]] = None,
    ) -> list[MemorySlice]:
        """Extract slices from a completed turn and merge them in.

        Returns the slices that were created or updated.
        """
        if self.mode == "off" or not (query or response):
            return []

        touched: list[MemorySlice] = []
        for candidate in extract_slices(response):
            merged = self._merge(candidate, source_agent_ids or [])
            if merged is not None and merged not in touched:
                touched.append(merged)

        self._stats["last_captured_at"] = self._clock()
        self._evict()
        logger.debug(f"Captured {len(touched)} memory slices ({len(self._slices)} total)")
        return touched

    def _evict(self) -> int:
        """Trim stored slices to ``max_slices``.

        Superseded slices go first, then the lowest importance x confidence,
        oldest first among equals.
        """
        excess = len(self._slices) - self.config.max_slices
        if excess <= 0:
            return 0
        ranked = sorted(
            self._slices,
            key=lambda s: (s.active, s.importance_score * s.confidence, s.timestamp),
        )
        dropped = {id(s) for s in ranked[:excess]}
        self._slices = [s for s in self._slices if id(s) not in dropped]
        self._stats["evicted"] += excess
        logger.debug(f"Evicted {excess} memory slices (cap {self.config.max_slices})")
        return excess

    # ------------------------------------------------------------------
    # Merge rules
    # ------------------------------------------------------------------

    def canonical_name(self, name: str) -> str:
        """Display name of the first-seen alias for ``name``."""
        key = canonical_entity(name)
        return self._aliases.setdefault(key, name.strip())

    def _new_slice(self, candidate: ExtractedSlice, agent_ids: list[str], entities: list[str]) -> MemorySlice:
        now = self._clock()
        entry = MemorySlice(
            id=f"mem-{uuid.uuid4().hex[:10]}",
            type=candidate.type,
            text=candidate.text,
            summary=summarize_response(candidate.text, 160),
            timestamp=now,
            tags=[candidate.type.value],
            entities=entities,
            source_agent_ids=list(agent_ids),
            importance_score=candidate.importance,
            confidence=candidate.confidence,
            source_hash=content_hash(candidate.text),
            token_estimate=estimate_tokens(candidate.text),
        )
        if candidate.type == SliceType.DECISION:
            tentative = decision_status_hint(candidate.text)
            entry.status = DecisionStatus.TENTATIVE if tentative else DecisionStatus.CONFIRMED
        self._slices.append(entry)
        return entry

    def _reinforce(self, existing: MemorySlice, agent_ids: list[str], step: float = CONFIDENCE_STEP) -> MemorySlice:
        existing.confidence = min(MAX_CONFIDENCE, existing.confidence + step)
        existing.mention_count += 1
        existing.timestamp = self._clock()
        for agent_id in agent_ids:
            if agent_id not in existing.source_agent_ids:
                existing.source_agent_ids.append(agent_id)
        self._stats["merged"] += 1
        return existing

    def _most_similar(self, slice_type: SliceType, text: str) -> tuple[Optional[MemorySlice], float]:
        best: Optional[MemorySlice] = None
        best_sim = 0.0
        for existing in self._slices:
            if existing.type != slice_type or not existing.active:
                continue
            sim = text_similarity(existing.text, text)
            if sim > best_sim:
                best, best_sim = existing, sim
        return best, best_sim

    def _merge(self, candidate: ExtractedSlice, agent_ids: list[str]) -> Optional[MemorySlice]:
        entities = [self.canonical_name(e) for e in candidate.entities]
        source_hash = content_hash(candidate.text)

        # Exact repeats only reinforce
        for existing in self._slices:
            if existing.active and existing.type == candidate.type and existing.source_hash == source_hash:
                if existing.type == SliceType.DECISION:
                    existing.status = DecisionStatus.CONFIRMED
                return self._reinforce(existing, agent_ids)

        if candidate.type == SliceType.ENTITY:
            key = canonical_entity(entities[0] if entities else candidate.text)
            for existing in self._slices:
                if existing.type == SliceType.ENTITY and existing.entities and canonical_entity(existing.entities[0]) == key:
                    return self._reinforce(existing, agent_ids, step=CONFIDENCE_STEP / 2)
            return self._new_slice(candidate, agent_ids, entities)

        similar, sim = self._most_similar(candidate.type, candidate.text)
        if similar is None or sim < self.config.similarity_threshold:
            return self._new_slice(candidate, agent_ids, entities)

        if candidate.type == SliceType.DECISION:
            if similar.status == DecisionStatus.TENTATIVE:
                logger.debug(f"Decision {similar.id} confirmed by repeat mention")
            similar.status = DecisionStatus.CONFIRMED
            return self._reinforce(similar, agent_ids)

        if candidate.type == SliceType.ACTION:
            newer = self._new_slice(candidate, agent_ids, entities)
            newer.supersedes = similar.id
            similar.superseded_by = newer.id
            logger.debug(f"Action {newer.id} supersedes {similar.id}")
            return newer

        # Risks, constraints, open questions and episodes unify
        if len(candidate.text) > len(similar.text):
            similar.text = candidate.text
            similar.summary = summarize_response(candidate.text, 160)
        for entity in entities:
            if entity not in similar.entities:
                similar.entities.append(entity)
        return self._reinforce(similar, agent_ids)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def _recency(self, timestamp: datetime, now: datetime) -> float:
        days = (now - timestamp).total_seconds() / 86400
        return max(0.0, 1.0 - days / self.config.recency_window_days)

    def _redundancy(self, entry: MemorySlice, now: datetime) -> float:
        if not entry.retrieval_count or entry.last_retrieved_at is None:
            return 0.0
        hours = (now - entry.last_retrieved_at).total_seconds() / 3600
        decay = max(0.0, 1.0 - hours / 24)
        return self.config.redundancy_penalty * entry.retrieval_count * decay

    def retrieve(
        self,
        query: str,
        agent_ids: Optional[list[str]] = None,
        max_results: Optional[int] = None,
        record: bool = True,
    ) -> RetrievalResult:
        """Two-stage retrieval of slices relevant to ``query``.

        In shadow mode the result is computed and flagged but retrieval
        counters are left untouched, so telemetry never feeds back into
        scoring.
        """
        if self.mode == "off":
            return RetrievalResult()

        now = self._clock()
        max_results = max_results or self.config.top_k
        query_tags = infer_query_tags(query)
        query_entity_keys = {canonical_entity(e) for e in extract_entities(query)}
        keywords = extract_keywords(query)
        # Lowercase mentions of known entities count too
        lowered = query.lower()
        query_entity_keys |= {key for key in self._aliases if key and key in lowered}
        allowed = set(agent_ids or [])
        window = timedelta(days=self.config.recency_window_days)

        # Stage A: cheap filter
        candidates: list[MemorySlice] = []
        for entry in self._slices:
            if not entry.active or now - entry.timestamp > window:
                continue
            if allowed and entry.source_agent_ids and not allowed.intersection(entry.source_agent_ids):
                continue
            if query_tags or query_entity_keys:
                tag_hit = any(tag in query_tags for tag in entry.tags)
                entity_hit = any(canonical_entity(e) in query_entity_keys for e in entry.entities)
                keyword_hit = any(k in entry.text.lower() for k in keywords)
                if not (tag_hit or entity_hit or keyword_hit):
                    continue
            candidates.append(entry)
        candidates.sort(key=lambda s: s.timestamp, reverse=True)
        candidates = candidates[: self.config.candidate_limit]

        # Stage B: score
        scored: list[ScoredSlice] = []
        for entry in candidates:
            text = entry.text.lower()
            score = (
                TAG_WEIGHT * sum(1 for tag in entry.tags if tag in query_tags)
                + ENTITY_WEIGHT * sum(1 for e in entry.entities if canonical_entity(e) in query_entity_keys)
                + RECENCY_WEIGHT * self._recency(entry.timestamp, now)
                + IMPORTANCE_WEIGHT * entry.importance_score
                + KEYWORD_WEIGHT * sum(1 for k in keywords if k in text)
                - self._redundancy(entry, now)
            )
            entry.recency_score = self._recency(entry.timestamp, now)
            scored.append(ScoredSlice(slice=entry, score=score))
        scored.sort(key=lambda s: s.score, reverse=True)

        selected: list[ScoredSlice] = []
        seen_hashes: set[str] = set()
        per_agent: dict[str, int] = {}
        per_tag: dict[str, int] = {}
        for item in scored:
            if len(selected) >= max_results:
                break
            entry = item.slice
            if entry.source_hash in seen_hashes:
                continue
            if any(per_agent.get(a, 0) >= self.config.max_slices_per_agent for a in entry.source_agent_ids):
                continue
            if entry.tags and all(per_tag.get(t, 0) >= self.config.max_slices_per_tag for t in entry.tags):
                continue
            selected.append(item)
            seen_hashes.add(entry.source_hash)
            for agent_id in entry.source_agent_ids:
                per_agent[agent_id] = per_agent.get(agent_id, 0) + 1
            for tag in entry.tags:
                per_tag[tag] = per_tag.get(tag, 0) + 1

        shadow = self.mode == "shadow"
        if shadow:
            self._stats["shadow_retrievals"] += 1
        else:
            self._stats["live_retrievals"] += 1
            if record:
                for item in selected:
                    item.slice.retrieval_count += 1
                    item.slice.last_retrieved_at = now

        return RetrievalResult(
            slices=selected,
            candidate_count=len(candidates),
            query_tags=query_tags,
            query_entities=sorted(query_entity_keys),
            query_keywords=keywords,
            shadow=shadow,
        )

    # ------------------------------------------------------------------
    # Durable state
    # ------------------------------------------------------------------

    def state_block(self) -> StateBlock:
        """Most important active slices per type, capped."""
        limit = self.config.state_block_items
        by_type: dict[SliceType, list[MemorySlice]] = {}
        for entry in self.active_slices():
            by_type.setdefault(entry.type, []).append(entry)

        def top(slice_type: SliceType) -> list[MemorySlice]:
            items = by_type.get(slice_type, [])
            items.sort(key=lambda s: (s.importance_score * s.confidence, s.timestamp), reverse=True)
            return items[:limit]

        def decision_text(entry: MemorySlice) -> str:
            if entry.status == DecisionStatus.TENTATIVE:
                return f"{entry.summary} (tentative)"
            return entry.summary

        return StateBlock(
            decisions=[decision_text(s) for s in top(SliceType.DECISION)],
            risks=[s.summary for s in top(SliceType.RISK)],
            entities=[s.entities[0] if s.entities else s.summary for s in top(SliceType.ENTITY)],
            open_questions=[s.summary for s in top(SliceType.OPEN_QUESTION)],
            constraints=[s.summary for s in top(SliceType.CONSTRAINT)],
            actions=[s.summary for s in top(SliceType.ACTION)],
        )

    # ------------------------------------------------------------------
    # Focus episodes
    # ------------------------------------------------------------------

    def start_episode(
        self,
        label: str,
        objective: str = "",
        trigger: EpisodeTrigger = EpisodeTrigger.EXPLICIT,
    ) -> FocusEpisode:
        """Begin collecting raw events. An already active episode is completed first."""
        if self.active_episode is not None:
            self.complete_episode()
        self._tail_start = len(self.history)
        self.active_episode = FocusEpisode(
            id=f"ep-{uuid.uuid4().hex[:8]}",
            label=label,
            objective=objective,
            trigger=trigger,
            started_at=self._clock(),
        )
        logger.info(f"Focus episode started: {label} ({trigger.value})")
        return self.active_episode

    def record_event(self, kind: str, text: str, depth: int = 0) -> None:
        if self.active_episode is None or not text:
            return
        episode = self.active_episode
        episode.events.append(EpisodeEvent(kind=kind, text=text, timestamp=self._clock()))
        if kind == "tool_call":
            episode.tool_calls += 1
        episode.max_depth = max(episode.max_depth, depth)

    def complete_episode(self) -> Optional[CompletedEpisode]:
        """Compress the active episode into a frozen summary plus slices."""
        episode = self.active_episode
        if episode is None:
            return None
        self.active_episode = None
        return self._compress(
            episode_id=episode.id,
            label=episode.label,
            objective=episode.objective,
            trigger=episode.trigger,
            started_at=episode.started_at,
            texts=[e.text for e in episode.events if e.kind in ("assistant", "note", "recursion")],
            event_count=len(episode.events),
        )

    def check_episode_triggers(
        self,
        projected_tokens: int = 0,
        prompt_cap: int = 0,
        tool_calls: int = 0,
        depth: int = 0,
        phase_complete: bool = False,
    ) -> Optional[CompletedEpisode]:
        """Compress recent raw interaction when an auto-trigger fires.

        Compresses the active episode if there is one, otherwise the turns
        recorded since the last compression.
        """
        trigger: Optional[EpisodeTrigger] = None
        if prompt_cap and projected_tokens > prompt_cap * self.config.episode_budget_threshold:
            trigger = EpisodeTrigger.BUDGET_PRESSURE
        elif phase_complete:
            trigger = EpisodeTrigger.PHASE_COMPLETE
        elif tool_calls >= self.config.episode_tool_call_threshold:
            trigger = EpisodeTrigger.TOOL_CALLS
        elif depth >= self.config.episode_depth_threshold:
            trigger = EpisodeTrigger.RECURSION_DEPTH
        if trigger is None:
            return None

        if self.active_episode is not None:
            logger.info(f"Episode trigger {trigger.value}: completing {self.active_episode.label}")
            return self.complete_episode()

        tail = self.history[self._tail_start:]
        if not tail:
            return None
        logger.info(f"Episode trigger {trigger.value}: compressing {len(tail)} turns")
        return self._compress(
            episode_id=f"ep-{uuid.uuid4().hex[:8]}",
            label=f"auto:{trigger.value}",
            objective=tail[0].query,
            trigger=trigger,
            started_at=tail[0].timestamp,
            texts=[t.response for t in tail],
            event_count=len(tail) * 2,
        )

    def _compress(
        self,
        episode_id: str,
        label: str,
        objective: str,
        trigger: EpisodeTrigger,
        started_at: datetime,
        texts: list[str],
        event_count: int,
    ) -> CompletedEpisode:
        buckets: dict[SliceType, list[str]] = {t: [] for t in SliceType}
        slice_ids: list[str] = []
        if self.mode != "off":
            for text in texts:
                for candidate in extract_slices(text):
                    merged = self._merge(candidate, [])
                    if merged is None:
                        continue
                    if merged.episode_id is None:
                        merged.episode_id = episode_id
                    if merged.id not in slice_ids:
                        slice_ids.append(merged.id)
                    if candidate.text not in buckets[candidate.type]:
                        buckets[candidate.type].append(candidate.text)

        completed = CompletedEpisode(
            id=episode_id,
            label=label,
            objective=objective,
            trigger=trigger,
            started_at=started_at,
            completed_at=self._clock(),
            event_count=event_count,
            summary=EpisodeSummary(
                decisions=tuple(buckets[SliceType.DECISION]),
                actions=tuple(buckets[SliceType.ACTION]),
                risks=tuple(buckets[SliceType.RISK]),
                entities=tuple(buckets[SliceType.ENTITY]),
                open_questions=tuple(buckets[SliceType.OPEN_QUESTION]),
                narrative=summarize_response(texts[-1]) if texts else "",
            ),
            slice_ids=tuple(slice_ids),
        )
        self._evict()
        self.episodes.append(completed)

        # Drop raw turns the episode covered, keeping the working window
        keep = self.config.working_window_turns
        covered = self.history[self._tail_start:]
        if len(covered) > keep:
            self.history = self.history[: self._tail_start] + covered[-keep:] if keep else self.history[: self._tail_start]
        self._tail_start = len(self.history)

        logger.info(f"Episode {label} compressed: {event_count} events -> {len(slice_ids)} slices")
        return completed

    def stats(self) -> dict[str, Any]:
        by_type: dict[str, int] = {}
        for entry in self.active_slices():
            by_type[entry.type.value] = by_type.get(entry.type.value, 0) + 1
        return {
            **self._stats,
            "mode": self.mode,
            "total_slices": len(self._slices),
            "active_slices": sum(by_type.values()),
            "slices_by_type": by_type,
            "turns": len(self.history),
            "episodes_completed": len(self.episodes),
            "active_episode": self.active_episode.label if self.active_episode else None,
        }
