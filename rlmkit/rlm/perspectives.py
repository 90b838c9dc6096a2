"""Perspective roles used to diversify sibling sub-answers.

A role prefixes a sub-query with a framing ("As a critical reviewer...")
so that map-phase answers disagree where the sources genuinely differ,
which gives the debate and conflict-detection steps something to work
with.
"""

from dataclasses import dataclass, field
from typing import Optional

from rlmkit.context.models import Agent, Group, GroupKind
from rlmkit.rlm.models import Classification, QueryType


@dataclass(frozen=True)
class PerspectiveRole:
    id: str
    label: str
    description: str
    prompt_prefix: str
    weight: float = 1.0
    triggers: tuple[str, ...] = field(default_factory=tuple)

    def frame(self, prompt: str) -> str:
        return f"{self.prompt_prefix}\n{prompt}"


ANALYST = PerspectiveRole(
    id="analyst",
    label="Analyst",
    description="Examines data critically and objectively",
    prompt_prefix="As an objective analyst, examine the facts and data:",
    weight=1.0,
)
ADVOCATE = PerspectiveRole(
    id="advocate",
    label="Advocate",
    description="Identifies supporting evidence and positive aspects",
    prompt_prefix="As an advocate, identify what supports and strengthens this:",
    weight=0.8,
)
CRITIC = PerspectiveRole(
    id="critic",
    label="Critic",
    description="Identifies weaknesses, risks, and counterarguments",
    prompt_prefix="As a critical reviewer, identify potential issues, risks, or contradictions:",
    weight=0.9,
)
SYNTHESIZER = PerspectiveRole(
    id="synthesizer",
    label="Synthesizer",
    description="Connects ideas and finds patterns across sources",
    prompt_prefix="As a synthesizer, identify connections, patterns, and broader implications:",
    weight=0.85,
)
HISTORIAN = PerspectiveRole(
    id="historian",
    label="Historian",
    description="Focuses on temporal context and evolution",
    prompt_prefix="From a historical perspective, trace how this evolved over time:",
    weight=0.7,
    triggers=("over time", "evolution", "history", "progress", "changed"),
)
STAKEHOLDER = PerspectiveRole(
    id="stakeholder",
    label="Stakeholder",
    description="Considers impact on different parties",
    prompt_prefix="From a stakeholder perspective, consider impacts on different parties:",
    weight=0.75,
    triggers=("impact", "stakeholder", "team", "customer", "user"),
)
PRAGMATIST = PerspectiveRole(
    id="pragmatist",
    label="Pragmatist",
    description="Focuses on actionable outcomes and feasibility",
    prompt_prefix="As a pragmatist, focus on what is actionable and feasible:",
    weight=0.8,
    triggers=("action", "implement", "next steps", "practical"),
)

ROLES: dict[str, PerspectiveRole] = {
    role.id: role
    for role in (ANALYST, ADVOCATE, CRITIC, SYNTHESIZER, HISTORIAN, STAKEHOLDER, PRAGMATIST)
}
PRIMARY_ROLES = (ANALYST, ADVOCATE, CRITIC, SYNTHESIZER)

# Opposing pairs moderated in the debate phase
DEBATE_PAIRS: tuple[tuple[str, str], ...] = (
    ("advocate", "critic"),
    ("analyst", "synthesizer"),
    ("pragmatist", "critic"),
)

INTENT_ROLES: dict[QueryType, tuple[PerspectiveRole, ...]] = {
    QueryType.COMPARATIVE: (ANALYST, CRITIC, SYNTHESIZER),
    QueryType.AGGREGATIVE: (ANALYST, ADVOCATE, SYNTHESIZER),
    QueryType.ANALYTICAL: (ANALYST, CRITIC, ADVOCATE, SYNTHESIZER),
    QueryType.TEMPORAL: (ANALYST, HISTORIAN, SYNTHESIZER),
    QueryType.SEARCH: (ANALYST,),
    QueryType.FACTUAL: (ANALYST, ADVOCATE, CRITIC),
}


def get_role(role_id: Optional[str]) -> Optional[PerspectiveRole]:
    if role_id is None:
        return None
    return ROLES.get(role_id)


def select_roles_for_query(classification: Classification, count: int, query: str = "") -> list[PerspectiveRole]:
    """Roles for ``count`` sibling sub-queries, cycling through the intent's set.

    A specialized role whose trigger phrase appears in the query is added
    to the rotation.
    """
    if count <= 0:
        return []
    roles = list(INTENT_ROLES.get(classification.type, PRIMARY_ROLES))
    lowered = query.lower()
    for role in (HISTORIAN, STAKEHOLDER, PRAGMATIST):
        if role not in roles and any(trigger in lowered for trigger in role.triggers):
            roles.append(role)
    return [roles[i % len(roles)] for i in range(count)]


def role_for_group(group: Group) -> PerspectiveRole:
    """Framing for a group-level sub-query, derived from how the group was formed."""
    if group.kind == GroupKind.TEMPORAL:
        return HISTORIAN
    if group.kind == GroupKind.THEMATIC:
        return SYNTHESIZER
    if group.kind == GroupKind.SOURCE:
        return ANALYST

    name = group.name.lower()
    if any(word in name for word in ("risk", "issue", "problem", "concern")):
        return CRITIC
    if any(word in name for word in ("q1", "q2", "q3", "q4", "week", "month", "quarter", "year", "sprint")):
        return HISTORIAN
    if any(word in name for word in ("action", "task", "plan", "roadmap")):
        return PRAGMATIST
    if any(word in name for word in ("customer", "client", "team", "stakeholder")):
        return STAKEHOLDER
    return SYNTHESIZER


def role_for_agent(agent: Agent) -> PerspectiveRole:
    """Suggested role from an agent's content signals."""
    signals = agent.metadata.content_signals
    if signals.get("risk_heavy") or signals.get("riskHeavy"):
        return CRITIC
    if signals.get("action_heavy") or signals.get("actionHeavy"):
        return PRAGMATIST
    if agent.metadata.temporal_context:
        return HISTORIAN
    return ANALYST
