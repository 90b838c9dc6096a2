"""Knowledge agents, groups and the context store."""

from rlmkit.context.models import (
    Agent,
    AgentMetadata,
    ContextLevel,
    Group,
    GroupKind,
    ScoredAgent,
)
from rlmkit.context.store import ContextStore

__all__ = [
    "Agent",
    "AgentMetadata",
    "ContextLevel",
    "ContextStore",
    "Group",
    "GroupKind",
    "ScoredAgent",
]
