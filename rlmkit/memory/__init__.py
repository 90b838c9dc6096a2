"""Signal-weighted memory: slices, focus episodes and the memory store."""

from rlmkit.memory.extraction import canonical_entity, extract_entities, extract_slices
from rlmkit.memory.models import (
    CompletedEpisode,
    DecisionStatus,
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
from rlmkit.memory.store import MemoryStore

__all__ = [
    "CompletedEpisode",
    "DecisionStatus",
    "EpisodeSummary",
    "EpisodeTrigger",
    "FocusEpisode",
    "MemorySlice",
    "MemoryStore",
    "RetrievalResult",
    "ScoredSlice",
    "SliceType",
    "StateBlock",
    "Turn",
    "WorkingWindow",
    "canonical_entity",
    "extract_entities",
    "extract_slices",
]
