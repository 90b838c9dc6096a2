"""Data models for signal-weighted conversation memory.

Slices are atomic facts extracted from completed turns. Focus episodes
bound raw interaction: while active they collect events; on completion
they are replaced by an immutable ``CompletedEpisode`` holding only a
structured summary and the ids of the slices it produced.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class SliceType(str, Enum):
    """Kinds of memory slices."""
    DECISION = "decision"
    ACTION = "action"
    RISK = "risk"
    ENTITY = "entity"
    CONSTRAINT = "constraint"
    OPEN_QUESTION = "open_question"
    EPISODE = "episode"


class DecisionStatus(str, Enum):
    TENTATIVE = "tentative"
    CONFIRMED = "confirmed"


class EpisodeTrigger(str, Enum):
    """Why a focus episode was started or compressed."""
    EXPLICIT = "explicit"
    BUDGET_PRESSURE = "budget_pressure"
    PHASE_COMPLETE = "phase_complete"
    TOOL_CALLS = "tool_calls"
    RECURSION_DEPTH = "recursion_depth"


# Base importance by slice type
TYPE_IMPORTANCE: dict[SliceType, float] = {
    SliceType.DECISION: 0.9,
    SliceType.RISK: 0.8,
    SliceType.ACTION: 0.7,
    SliceType.CONSTRAINT: 0.6,
    SliceType.ENTITY: 0.5,
    SliceType.OPEN_QUESTION: 0.4,
    SliceType.EPISODE: 0.3,
}


@dataclass
class MemorySlice:
    """One atomic, retrievable memory."""
    id: str
    type: SliceType
    text: str
    summary: str
    timestamp: datetime
    tags: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)  # Canonical names
    source_agent_ids: list[str] = field(default_factory=list)

    recency_score: float = 1.0
    importance_score: float = 0.5
    retrieval_count: int = 0
    last_retrieved_at: Optional[datetime] = None
    confidence: float = 0.6
    source_hash: str = ""  # Dedup key
    token_estimate: int = 0

    # Merge bookkeeping
    status: Optional[DecisionStatus] = None  # Decisions only
    supersedes: Optional[str] = None  # Actions: id of the entry this replaced
    superseded_by: Optional[str] = None
    mention_count: int = 1
    episode_id: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.superseded_by is None


@dataclass
class ScoredSlice:
    """A retrieval candidate with its stage-B score."""
    slice: MemorySlice
    score: float


@dataclass
class RetrievalResult:
    """Outcome of one two-stage retrieval."""
    slices: list[ScoredSlice] = field(default_factory=list)
    candidate_count: int = 0
    query_tags: list[str] = field(default_factory=list)
    query_entities: list[str] = field(default_factory=list)
    query_keywords: list[str] = field(default_factory=list)
    shadow: bool = False  # Computed for telemetry only


@dataclass
class Turn:
    """One user/assistant exchange in conversation history."""
    query: str
    response: str
    timestamp: datetime
    cached: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkingWindow:
    """The last few user turns plus a short summary of the last answer."""
    user_turns: list[str] = field(default_factory=list)  # Most recent first
    assistant_summary: str = ""

    def render(self) -> str:
        lines = [f"User: {turn}" for turn in reversed(self.user_turns)]
        if self.assistant_summary:
            lines.append(f"Assistant (summary): {self.assistant_summary}")
        return "\n".join(lines)

    def is_empty(self) -> bool:
        return not self.user_turns and not self.assistant_summary


@dataclass
class StateBlock:
    """Durable, capped view of what the session has established."""
    decisions: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)

    def sections(self) -> list[tuple[str, list[str]]]:
        """Non-empty sections in priority order (most durable first)."""
        ordered = [
            ("Decisions", self.decisions),
            ("Risks", self.risks),
            ("Entities", self.entities),
            ("Open Questions", self.open_questions),
            ("Constraints", self.constraints),
            ("Actions", self.actions),
        ]
        return [(label, items) for label, items in ordered if items]

    def render(self) -> str:
        blocks = []
        for label, items in self.sections():
            bullets = "\n".join(f"- {item}" for item in items)
            blocks.append(f"{label}:\n{bullets}")
        return "\n".join(blocks)

    def is_empty(self) -> bool:
        return not self.sections()


@dataclass
class EpisodeEvent:
    """One raw event inside an active focus episode."""
    kind: str  # "user", "assistant", "tool_call", "recursion", "note"
    text: str
    timestamp: datetime


@dataclass(frozen=True)
class EpisodeSummary:
    """Structured digest kept after an episode's raw events are dropped."""
    decisions: tuple[str, ...] = ()
    actions: tuple[str, ...] = ()
    risks: tuple[str, ...] = ()
    entities: tuple[str, ...] = ()
    open_questions: tuple[str, ...] = ()
    narrative: str = ""


@dataclass
class FocusEpisode:
    """An episode that is still collecting raw events."""
    id: str
    label: str
    objective: str
    trigger: EpisodeTrigger
    started_at: datetime
    events: list[EpisodeEvent] = field(default_factory=list)
    tool_calls: int = 0
    max_depth: int = 0


@dataclass(frozen=True)
class CompletedEpisode:
    """A compressed episode. Immutable; carries no raw events."""
    id: str
    label: str
    objective: str
    trigger: EpisodeTrigger
    started_at: datetime
    completed_at: datetime
    event_count: int
    summary: EpisodeSummary
    slice_ids: tuple[str, ...] = ()
