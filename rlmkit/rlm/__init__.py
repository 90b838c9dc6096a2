"""Recursive query orchestration: decompose, execute, reconcile, aggregate."""

from rlmkit.rlm.aggregator import Aggregator
from rlmkit.rlm.cache import QueryCache
from rlmkit.rlm.classifier import QueryClassifier
from rlmkit.rlm.conflicts import ConflictDetector
from rlmkit.rlm.decomposer import QueryDecomposer
from rlmkit.rlm.events import EventChannel, EventType, ProgressEvent
from rlmkit.rlm.executor import ExecutionContext, ExecutionOutcome, MemoryContext, SubExecutor
from rlmkit.rlm.models import (
    Classification,
    ExecutionResult,
    PipelineResult,
    Plan,
    QueryType,
    Strategy,
    SubQuery,
)
from rlmkit.rlm.pipeline import Pipeline, ProcessOptions
from rlmkit.rlm.sandbox import SandboxAPI, SandboxRunner
from rlmkit.rlm.session import Session

__all__ = [
    "Aggregator",
    "Classification",
    "ConflictDetector",
    "EventChannel",
    "EventType",
    "ExecutionContext",
    "ExecutionOutcome",
    "ExecutionResult",
    "MemoryContext",
    "Pipeline",
    "PipelineResult",
    "Plan",
    "ProcessOptions",
    "ProgressEvent",
    "QueryCache",
    "QueryClassifier",
    "QueryDecomposer",
    "QueryType",
    "SandboxAPI",
    "SandboxRunner",
    "Session",
    "Strategy",
    "SubExecutor",
    "SubQuery",
]
