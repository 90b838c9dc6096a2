"""Error kinds raised inside the orchestration pipeline.

None of these are meant to reach a caller of ``Pipeline.process`` as an
exception. Each is either handled at the step that raised it (fallback,
retry, skip) or converted into a failed ``ExecutionResult`` or a
plain-language ``PipelineResult``.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Stable identifiers for failure causes."""
    CLASSIFICATION_AMBIGUOUS = "classification_ambiguous"
    SUB_QUERY_TIMEOUT = "sub_query_timeout"
    RECURSION_LIMIT_EXCEEDED = "recursion_limit_exceeded"
    UPSTREAM_CALL_FAILED = "upstream_call_failed"
    CACHE_CORRUPT = "cache_corrupt"
    BUDGET_OVERFLOW = "budget_overflow"
    PLAN_TIMEOUT = "plan_timeout"


class RLMError(Exception):
    """Base class for pipeline errors."""

    kind: ErrorKind = ErrorKind.UPSTREAM_CALL_FAILED

    def __init__(
        self,
        message: str,
        depth: Optional[int] = None,
        sub_query_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.depth = depth
        self.sub_query_id = sub_query_id

    def to_detail(self) -> dict[str, Any]:
        """Structured diagnostics, safe to show to a user."""
        detail: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.depth is not None:
            detail["depth"] = self.depth
        if self.sub_query_id is not None:
            detail["sub_query_id"] = self.sub_query_id
        return detail


class ClassificationAmbiguous(RLMError):
    """Competing intents scored equally; the decomposer falls back to direct."""
    kind = ErrorKind.CLASSIFICATION_AMBIGUOUS

    def __init__(self, message: str, classification: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.classification = classification


class SubQueryTimeout(RLMError):
    """A single sub-query exceeded its call timeout."""
    kind = ErrorKind.SUB_QUERY_TIMEOUT


class RecursionLimitExceeded(RLMError):
    """A recursive call was requested at or beyond the depth ceiling."""
    kind = ErrorKind.RECURSION_LIMIT_EXCEEDED


class UpstreamCallFailed(RLMError):
    """The language-model call raised or returned nothing usable."""
    kind = ErrorKind.UPSTREAM_CALL_FAILED


class CacheCorrupt(RLMError):
    """A cache entry could not be read back."""
    kind = ErrorKind.CACHE_CORRUPT


class BudgetOverflow(RLMError):
    """A prompt could not be fit into the configured token budget."""
    kind = ErrorKind.BUDGET_OVERFLOW


class PlanTimeout(RLMError):
    """The plan-level deadline elapsed before all sub-queries finished."""
    kind = ErrorKind.PLAN_TIMEOUT


# Plain-language text shown when a failure of this kind ends a query
FAILURE_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.UPSTREAM_CALL_FAILED: "The language model could not be reached to answer this question. Please try again.",
    ErrorKind.SUB_QUERY_TIMEOUT: "The language model did not answer in time. Please try again.",
    ErrorKind.RECURSION_LIMIT_EXCEEDED: "This question needed more nested steps than allowed.",
    ErrorKind.PLAN_TIMEOUT: "This question took too long to answer. Try a narrower question or fewer sources.",
}


def error_for_kind(kind: ErrorKind, message: str, **kwargs: Any) -> RLMError:
    """Instantiate the error class registered for ``kind``."""
    for cls in RLMError.__subclasses__():
        if cls.kind == kind:
            return cls(message, **kwargs)
    return RLMError(message, **kwargs)
