"""Data models for query orchestration.

Plans are a closed set of variants, one dataclass per execution
strategy, each carrying its own sub-query lists. The executor dispatches
on the variant type rather than on strategy strings.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Optional

from rlmkit.context.models import ContextLevel
from rlmkit.errors import ErrorKind


class QueryType(str, Enum):
    """Intent of a user query."""
    FACTUAL = "factual"
    COMPARATIVE = "comparative"
    AGGREGATIVE = "aggregative"
    SEARCH = "search"
    ANALYTICAL = "analytical"
    TEMPORAL = "temporal"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"

    @property
    def rank(self) -> int:
        return ["simple", "moderate", "complex"].index(self.value)


class DataPreference(str, Enum):
    """What depth of source material the query wants."""
    SUMMARY = "summary"
    STANDARD = "standard"
    DETAILED = "detailed"
    RECENT = "recent"


class Strategy(str, Enum):
    DIRECT = "direct"
    PARALLEL = "parallel"
    MAP_REDUCE = "map-reduce"
    ITERATIVE = "iterative"
    GROUP = "group"
    MAP_DEBATE_REDUCE = "map-debate-reduce"
    CODE = "code"


class SubQueryKind(str, Enum):
    DIRECT = "direct"
    AGENT = "agent"
    MAP = "map"
    REDUCE = "reduce"
    DEBATE = "debate"
    INITIAL = "initial"
    FOLLOW_UP = "follow_up"
    GROUP = "group"
    CODE = "code"


# Sub-queries that answer the question directly; compared pairwise and merged
SIBLING_KINDS = (SubQueryKind.AGENT, SubQueryKind.MAP, SubQueryKind.GROUP)


@dataclass
class Classification:
    """Lexical classification of a query."""
    type: QueryType
    complexity: Complexity
    exploratory: bool = False
    format_constraints: list[str] = field(default_factory=list)  # "list", "table", "brief", ...
    data_preference: DataPreference = DataPreference.STANDARD
    mentions_timeframe: bool = False
    ambiguous: bool = False
    intent_scores: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "complexity": self.complexity.value,
            "exploratory": self.exploratory,
            "format_constraints": list(self.format_constraints),
            "data_preference": self.data_preference.value,
            "ambiguous": self.ambiguous,
        }


@dataclass
class SubQuery:
    """One bounded-scope question derived from the user's query."""
    id: str
    kind: SubQueryKind
    prompt: str
    parent_id: str
    target_agent_ids: list[str] = field(default_factory=list)
    group_id: Optional[str] = None
    perspective: Optional[str] = None  # Perspective role id
    depth: int = 0
    context_level: ContextLevel = ContextLevel.STANDARD
    label: str = ""  # Agent or group display name
    relevance: float = 0.0
    depends_on: list[str] = field(default_factory=list)


@dataclass
class ExecutionResult:
    """Outcome of one sub-query."""
    sub_query_id: str
    kind: SubQueryKind
    response: str = ""
    source_agent_ids: list[str] = field(default_factory=list)
    source_names: list[str] = field(default_factory=list)
    perspective: Optional[str] = None
    latency: float = 0.0  # Seconds
    input_tokens: int = 0
    output_tokens: int = 0
    success: bool = True
    error_kind: Optional[ErrorKind] = None
    error: str = ""
    attempts: int = 1
    prompt_fallback: bool = False


# ----------------------------------------------------------------------
# Plans
# ----------------------------------------------------------------------


@dataclass(kw_only=True)
class Plan:
    """Common plan fields; use one of the concrete variants."""
    strategy: ClassVar[Strategy]

    query_id: str
    query: str
    classification: Classification
    relevance: dict[str, float] = field(default_factory=dict)  # Agent id -> score, best first
    truncated: int = 0  # Agents dropped by the sub-query ceiling
    reason: str = ""

    @property
    def sub_queries(self) -> list[SubQuery]:
        raise NotImplementedError

    @property
    def relevant_agent_ids(self) -> list[str]:
        return list(self.relevance)

    @property
    def total_sub_queries(self) -> int:
        return len(self.sub_queries)


@dataclass(kw_only=True)
class DirectPlan(Plan):
    strategy: ClassVar[Strategy] = Strategy.DIRECT
    call: SubQuery

    @property
    def sub_queries(self) -> list[SubQuery]:
        return [self.call]


@dataclass(kw_only=True)
class ParallelPlan(Plan):
    strategy: ClassVar[Strategy] = Strategy.PARALLEL
    calls: list[SubQuery] = field(default_factory=list)

    @property
    def sub_queries(self) -> list[SubQuery]:
        return list(self.calls)


@dataclass(kw_only=True)
class MapReducePlan(Plan):
    strategy: ClassVar[Strategy] = Strategy.MAP_REDUCE
    maps: list[SubQuery] = field(default_factory=list)
    reduce: SubQuery

    @property
    def sub_queries(self) -> list[SubQuery]:
        return [*self.maps, self.reduce]


@dataclass(kw_only=True)
class IterativePlan(Plan):
    """Initial call plus a follow-up that only runs if the answer is uncertain.

    The follow-up counts toward ``total_sub_queries`` since it is reserved.
    """
    strategy: ClassVar[Strategy] = Strategy.ITERATIVE
    initial: SubQuery
    follow_up: SubQuery

    @property
    def sub_queries(self) -> list[SubQuery]:
        return [self.initial, self.follow_up]


@dataclass(kw_only=True)
class GroupPlan(Plan):
    """One sub-query per group (plus an ungrouped bundle).

    Keeps the debate and reduce steps of the plan it was compacted from.
    """
    strategy: ClassVar[Strategy] = Strategy.GROUP
    groups: list[SubQuery] = field(default_factory=list)
    debate: Optional[SubQuery] = None
    reduce: Optional[SubQuery] = None
    source_strategy: Strategy = Strategy.PARALLEL

    @property
    def sub_queries(self) -> list[SubQuery]:
        tail = [sq for sq in (self.debate, self.reduce) if sq is not None]
        return [*self.groups, *tail]


@dataclass(kw_only=True)
class MapDebateReducePlan(Plan):
    strategy: ClassVar[Strategy] = Strategy.MAP_DEBATE_REDUCE
    maps: list[SubQuery] = field(default_factory=list)
    debate: SubQuery
    reduce: SubQuery

    @property
    def sub_queries(self) -> list[SubQuery]:
        return [*self.maps, self.debate, self.reduce]


@dataclass(kw_only=True)
class CodePlan(Plan):
    """A single sub-query executed by a sandboxed program."""
    strategy: ClassVar[Strategy] = Strategy.CODE
    call: SubQuery

    @property
    def sub_queries(self) -> list[SubQuery]:
        return [self.call]


# ----------------------------------------------------------------------
# Conflict analysis
# ----------------------------------------------------------------------


class PairRelation(str, Enum):
    CONFLICT = "conflict"
    AGREEMENT = "agreement"


@dataclass
class PairAnalysis:
    """Relation between two sibling results. Ids are stored in sorted order."""
    first_id: str
    second_id: str
    relation: PairRelation
    confidence: float
    similarity: float
    conflict_score: int = 0
    agreement_score: int = 0
    themes: list[str] = field(default_factory=list)

    @property
    def pair(self) -> tuple[str, str]:
        return (self.first_id, self.second_id)


@dataclass
class ConflictReport:
    pairs: list[PairAnalysis] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)
    summary: str = ""

    @property
    def conflicts(self) -> list[PairAnalysis]:
        return [p for p in self.pairs if p.relation == PairRelation.CONFLICT]

    @property
    def agreements(self) -> list[PairAnalysis]:
        return [p for p in self.pairs if p.relation == PairRelation.AGREEMENT]

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def find(self, a: str, b: str) -> Optional[PairAnalysis]:
        key = tuple(sorted((a, b)))
        for pair in self.pairs:
            if pair.pair == key:
                return pair
        return None


# ----------------------------------------------------------------------
# Pipeline output
# ----------------------------------------------------------------------


@dataclass
class AggregationResult:
    response: str
    aggregation_type: str  # "single", "synthesis", "reduce", "merge", "early_stop", "empty"
    source_count: int = 0
    deduplicated: int = 0
    sources: list[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ResponseMetadata:
    """Structured detail returned alongside every response."""
    strategy: Optional[str] = None
    classification: Optional[dict[str, Any]] = None
    total_sub_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    sources: list[str] = field(default_factory=list)
    aggregation_type: str = ""
    conflicts: int = 0
    agreements: int = 0
    conflict_summary: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    depth: int = 0
    early_stop: bool = False
    timed_out: bool = False
    prompt_fallbacks: int = 0
    memory_slices_used: int = 0
    pipeline_time: float = 0.0
    error: Optional[dict[str, Any]] = None


@dataclass
class PipelineResult:
    response: str
    metadata: ResponseMetadata = field(default_factory=ResponseMetadata)
    success: bool = True
    cached: bool = False
