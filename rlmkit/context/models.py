"""Data models for knowledge agents and groups.

An agent is one independently-summarized document (a meeting, a report).
Groups bundle agents by weak reference: the agent carries ``group_id``,
the group owns nothing.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class GroupKind(str, Enum):
    """How a group was formed."""
    THEMATIC = "thematic"
    TEMPORAL = "temporal"
    SOURCE = "source"
    CUSTOM = "custom"


class ContextLevel(str, Enum):
    """Detail level of an agent's context slice."""
    SUMMARY = "summary"
    STANDARD = "standard"
    FULL = "full"


@dataclass
class AgentMetadata:
    """Optional structured signals produced at ingestion."""
    topic_tags: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    temporal_context: str = ""
    content_signals: dict[str, Any] = field(default_factory=dict)


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _as_text(value: Any) -> str:
    # Key points / action items may arrive as bullet lists
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "\n".join(f"- {item}" for item in value)
    return str(value)


@dataclass
class Agent:
    """A loaded knowledge agent."""
    id: str
    display_name: str
    enabled: bool = True
    group_id: Optional[str] = None
    date: Optional[str] = None  # ISO date of the source material

    summary: str = ""
    key_points: str = ""
    action_items: str = ""
    sentiment: str = ""
    transcript: str = ""

    metadata: AgentMetadata = field(default_factory=AgentMetadata)

    @property
    def search_text(self) -> str:
        """All searchable text, lowercased."""
        parts = [
            self.display_name, self.summary, self.key_points,
            self.action_items, self.sentiment, self.transcript,
            " ".join(self.metadata.topic_tags), " ".join(self.metadata.entities),
        ]
        return " ".join(p for p in parts if p).lower()

    def parsed_date(self) -> Optional[datetime]:
        if not self.date:
            return None
        try:
            return datetime.fromisoformat(self.date.replace("Z", "+00:00"))
        except ValueError:
            return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Agent":
        """Build an agent from an ingestion record (camelCase or snake_case keys)."""
        meta = _pick(data, "metadata", default={}) or {}
        return cls(
            id=str(data["id"]),
            display_name=_pick(data, "displayName", "display_name", "title", default="Untitled"),
            enabled=bool(_pick(data, "enabled", default=True)),
            group_id=_pick(data, "groupId", "group_id"),
            date=_pick(data, "date"),
            summary=_as_text(_pick(data, "summary")),
            key_points=_as_text(_pick(data, "keyPoints", "key_points")),
            action_items=_as_text(_pick(data, "actionItems", "action_items")),
            sentiment=_as_text(_pick(data, "sentiment")),
            transcript=_as_text(_pick(data, "transcript")),
            metadata=AgentMetadata(
                topic_tags=list(_pick(meta, "topicTags", "topic_tags", default=[])),
                entities=list(_pick(meta, "entities", default=[])),
                temporal_context=_pick(meta, "temporalContext", "temporal_context", default=""),
                content_signals=dict(_pick(meta, "contentSignals", "content_signals", default={})),
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "enabled": self.enabled,
            "groupId": self.group_id,
            "date": self.date,
            "summary": self.summary,
            "keyPoints": self.key_points,
            "actionItems": self.action_items,
            "sentiment": self.sentiment,
            "transcript": self.transcript,
            "metadata": {
                "topicTags": list(self.metadata.topic_tags),
                "entities": list(self.metadata.entities),
                "temporalContext": self.metadata.temporal_context,
                "contentSignals": dict(self.metadata.content_signals),
            },
        }


@dataclass
class Group:
    """A named bundle of agents. Color and icon are presentation only."""
    id: str
    name: str
    kind: GroupKind = GroupKind.CUSTOM
    color: str = ""
    icon: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Group":
        kind = _pick(data, "kind", "type", default=GroupKind.CUSTOM.value)
        try:
            kind = GroupKind(kind)
        except ValueError:
            kind = GroupKind.CUSTOM
        return cls(
            id=str(data["id"]),
            name=_pick(data, "name", default="Group"),
            kind=kind,
            color=_pick(data, "color", default=""),
            icon=_pick(data, "icon", default=""),
        )


@dataclass
class ScoredAgent:
    """An agent paired with its relevance to a query."""
    agent: Agent
    score: float
