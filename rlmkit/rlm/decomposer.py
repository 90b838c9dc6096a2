"""Query Decomposition - turn a question into an execution plan.

Planning is pure: the decomposer reads the context store but never
mutates it and never calls a model. It picks one of the plan variants
from ``rlmkit.rlm.models`` and fills in the sub-queries, enforcing the
sub-query ceiling by keeping the most relevant agents.
"""

import uuid
from typing import Optional

from loguru import logger

from rlmkit.config.schema import RLMConfig
from rlmkit.context.models import Agent, ContextLevel, ScoredAgent
from rlmkit.context.store import ContextStore
from rlmkit.errors import ClassificationAmbiguous
from rlmkit.rlm.classifier import QueryClassifier
from rlmkit.rlm.models import (
    Classification,
    Complexity,
    DataPreference,
    DirectPlan,
    GroupPlan,
    IterativePlan,
    MapDebateReducePlan,
    MapReducePlan,
    ParallelPlan,
    Plan,
    QueryType,
    Strategy,
    SubQuery,
    SubQueryKind,
)
from rlmkit.rlm.perspectives import (
    ANALYST,
    get_role,
    role_for_agent,
    role_for_group,
    select_roles_for_query,
)

MAP_PROMPTS: dict[QueryType, str] = {
    QueryType.FACTUAL: "Extract any relevant facts or decisions related to: {query}",
    QueryType.AGGREGATIVE: "List all items related to: {query}",
    QueryType.ANALYTICAL: "Identify patterns or themes related to: {query}",
    QueryType.TEMPORAL: "Note any timeline or progression related to: {query}",
    QueryType.COMPARATIVE: "Summarize the key points about: {query}",
    QueryType.SEARCH: "Find every mention relevant to: {query}. Quote the source wording where possible.",
}

REDUCE_PROMPTS: dict[QueryType, str] = {
    QueryType.FACTUAL: "Based on the gathered information, answer: {query}",
    QueryType.AGGREGATIVE: "Combine and organize all the gathered items for: {query}",
    QueryType.ANALYTICAL: "Synthesize the patterns found across sources for: {query}",
    QueryType.TEMPORAL: "Create a timeline or progression summary for: {query}",
    QueryType.COMPARATIVE: "Compare and contrast the findings for: {query}",
    QueryType.SEARCH: "Collect the matching passages and answer: {query}",
}

DEBATE_PROMPT = (
    "Find the tensions between the perspectives gathered for: {query}\n"
    "Identify points of agreement, points of tension or disagreement, "
    "and which position has the stronger evidence."
)

FOLLOW_UP_PROMPT = (
    "The first pass at this question was inconclusive. Look more closely at the "
    "full source material and answer: {query}"
)

# Maps the classifier's data preference onto a context detail level
PREFERENCE_LEVELS: dict[DataPreference, ContextLevel] = {
    DataPreference.SUMMARY: ContextLevel.SUMMARY,
    DataPreference.DETAILED: ContextLevel.FULL,
}

ITERATIVE_INITIAL_AGENTS = 3


class QueryDecomposer:
    """Choose an execution strategy and emit its plan."""

    def __init__(self, config: Optional[RLMConfig] = None, classifier: Optional[QueryClassifier] = None):
        self.config = config or RLMConfig()
        self.classifier = classifier or QueryClassifier()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def decompose(self, query: str, store: ContextStore, query_id: Optional[str] = None) -> Plan:
        query_id = query_id or f"q-{uuid.uuid4().hex[:8]}"
        active = store.active_agents()

        try:
            classification = self.classifier.classify(query, len(active))
        except ClassificationAmbiguous as e:
            logger.warning(f"{e.message}; falling back to direct strategy")
            relevant = self.relevant_agents(query, e.classification, store)
            return self._direct(query_id, query, e.classification, relevant, reason="ambiguous classification")

        relevant = self.relevant_agents(query, classification, store)
        plan = self._plan(query_id, query, classification, relevant)

        if self.group_eligible(plan, store):
            plan = self.compact_to_groups(plan, store)

        logger.info(
            f"Plan {plan.strategy.value}: {plan.total_sub_queries} sub-queries over "
            f"{len(plan.relevance)} agents ({classification.type.value}, {classification.complexity.value})"
        )
        return plan

    def relevant_agents(self, query: str, classification: Classification, store: ContextStore) -> list[ScoredAgent]:
        """Agents worth querying, best first.

        Aggregate-style intents ("across all ...") keep every active agent;
        the rest keep agents matching at least one query keyword, or every
        active agent when none match.
        """
        ranked = store.query_agents(query)
        if classification.type in (QueryType.AGGREGATIVE, QueryType.ANALYTICAL, QueryType.TEMPORAL):
            return ranked
        matched = {s.agent.id for s in store.query_agents(query, min_score=1.0, include_recency=False)}
        relevant = [s for s in ranked if s.agent.id in matched]
        return relevant or ranked

    # ------------------------------------------------------------------
    # Strategy selection
    # ------------------------------------------------------------------

    def select_strategy(self, classification: Classification, agent_count: int) -> Strategy:
        if agent_count == 0:
            return Strategy.DIRECT
        if classification.complexity == Complexity.SIMPLE and agent_count <= 2:
            return Strategy.DIRECT
        if agent_count == 1:
            return Strategy.DIRECT
        if self.debate_eligible(classification, agent_count):
            return Strategy.MAP_DEBATE_REDUCE
        if classification.type == QueryType.COMPARATIVE:
            return Strategy.PARALLEL
        if classification.type in (QueryType.AGGREGATIVE, QueryType.ANALYTICAL):
            return Strategy.MAP_REDUCE
        if classification.exploratory:
            return Strategy.ITERATIVE
        return Strategy.PARALLEL

    def debate_eligible(self, classification: Classification, agent_count: int) -> bool:
        threshold = Complexity(self.config.debate_complexity_threshold)
        return (
            self.config.enable_debate_phase
            and classification.type in (QueryType.ANALYTICAL, QueryType.COMPARATIVE)
            and classification.complexity.rank >= threshold.rank
            and agent_count >= self.config.debate_min_perspectives
        )

    def _plan(
        self,
        query_id: str,
        query: str,
        classification: Classification,
        relevant: list[ScoredAgent],
    ) -> Plan:
        strategy = self.select_strategy(classification, len(relevant))
        if strategy == Strategy.DIRECT:
            return self._direct(query_id, query, classification, relevant)
        if strategy == Strategy.PARALLEL:
            return self._parallel(query_id, query, classification, relevant)
        if strategy == Strategy.MAP_REDUCE:
            return self._map_reduce(query_id, query, classification, relevant)
        if strategy == Strategy.MAP_DEBATE_REDUCE:
            return self._map_debate_reduce(query_id, query, classification, relevant)
        return self._iterative(query_id, query, classification, relevant)

    # ------------------------------------------------------------------
    # Plan builders
    # ------------------------------------------------------------------

    def _level(self, classification: Classification, default: Optional[ContextLevel] = None) -> ContextLevel:
        return PREFERENCE_LEVELS.get(
            classification.data_preference,
            default or ContextLevel(self.config.context_level),
        )

    def _cap(self, relevant: list[ScoredAgent], reserved: int) -> tuple[list[ScoredAgent], int]:
        """Keep the most relevant agents that fit under the sub-query ceiling."""
        limit = max(1, self.config.max_sub_queries - reserved)
        if len(relevant) <= limit:
            return relevant, 0
        dropped = len(relevant) - limit
        logger.warning(f"Sub-query ceiling {self.config.max_sub_queries} reached; dropping {dropped} least relevant agents")
        return relevant[:limit], dropped

    @staticmethod
    def _relevance(relevant: list[ScoredAgent]) -> dict[str, float]:
        return {s.agent.id: s.score for s in relevant}

    def _direct(
        self,
        query_id: str,
        query: str,
        classification: Classification,
        relevant: list[ScoredAgent],
        reason: str = "simple query with limited scope",
    ) -> DirectPlan:
        call = SubQuery(
            id="sq-0",
            kind=SubQueryKind.DIRECT,
            prompt=query,
            parent_id=query_id,
            target_agent_ids=[s.agent.id for s in relevant],
            context_level=self._level(classification),
            relevance=relevant[0].score if relevant else 0.0,
        )
        return DirectPlan(
            query_id=query_id,
            query=query,
            classification=classification,
            relevance=self._relevance(relevant),
            reason=reason,
            call=call,
        )

    def _agent_roles(self, classification: Classification, agents: list[Agent], query: str) -> list[Optional[str]]:
        if classification.type in (QueryType.FACTUAL, QueryType.SEARCH):
            return [None] * len(agents)
        rotation = select_roles_for_query(classification, len(agents), query)
        roles = []
        for agent, rotated in zip(agents, rotation):
            suggested = role_for_agent(agent)
            roles.append(suggested.id if suggested is not ANALYST else rotated.id)
        return roles

    def _framed(self, prompt: str, role_id: Optional[str]) -> str:
        role = get_role(role_id)
        return role.frame(prompt) if role else prompt

    def _parallel(
        self,
        query_id: str,
        query: str,
        classification: Classification,
        relevant: list[ScoredAgent],
    ) -> ParallelPlan:
        kept, dropped = self._cap(relevant, reserved=0)
        agents = [s.agent for s in kept]
        roles = self._agent_roles(classification, agents, query)
        calls = [
            SubQuery(
                id=f"sq-{i}",
                kind=SubQueryKind.AGENT,
                prompt=self._framed(f'Regarding "{s.agent.display_name}": {query}', role),
                parent_id=query_id,
                target_agent_ids=[s.agent.id],
                perspective=role,
                context_level=self._level(classification),
                label=s.agent.display_name,
                relevance=s.score,
            )
            for i, (s, role) in enumerate(zip(kept, roles))
        ]
        return ParallelPlan(
            query_id=query_id,
            query=query,
            classification=classification,
            relevance=self._relevance(kept),
            truncated=dropped,
            reason="per-agent analysis",
            calls=calls,
        )

    def _maps(
        self,
        query_id: str,
        query: str,
        classification: Classification,
        kept: list[ScoredAgent],
        roles: list[Optional[str]],
    ) -> list[SubQuery]:
        template = MAP_PROMPTS.get(classification.type, MAP_PROMPTS[QueryType.FACTUAL])
        level = self._level(classification, default=ContextLevel.SUMMARY)
        return [
            SubQuery(
                id=f"sq-map-{i}",
                kind=SubQueryKind.MAP,
                prompt=self._framed(template.format(query=query), role),
                parent_id=query_id,
                target_agent_ids=[s.agent.id],
                perspective=role,
                context_level=level,
                label=s.agent.display_name,
                relevance=s.score,
            )
            for i, (s, role) in enumerate(zip(kept, roles))
        ]

    def _reduce(self, query_id: str, query: str, classification: Classification, depends_on: list[str]) -> SubQuery:
        template = REDUCE_PROMPTS.get(classification.type, REDUCE_PROMPTS[QueryType.FACTUAL])
        return SubQuery(
            id="sq-reduce",
            kind=SubQueryKind.REDUCE,
            prompt=template.format(query=query),
            parent_id=query_id,
            depends_on=list(depends_on),
        )

    def _map_reduce(
        self,
        query_id: str,
        query: str,
        classification: Classification,
        relevant: list[ScoredAgent],
    ) -> MapReducePlan:
        kept, dropped = self._cap(relevant, reserved=1)
        maps = self._maps(query_id, query, classification, kept, [None] * len(kept))
        return MapReducePlan(
            query_id=query_id,
            query=query,
            classification=classification,
            relevance=self._relevance(kept),
            truncated=dropped,
            reason="gather from every source, then synthesize",
            maps=maps,
            reduce=self._reduce(query_id, query, classification, [m.id for m in maps]),
        )

    def _map_debate_reduce(
        self,
        query_id: str,
        query: str,
        classification: Classification,
        relevant: list[ScoredAgent],
    ) -> MapDebateReducePlan:
        kept, dropped = self._cap(relevant, reserved=2)
        roles = [r.id for r in select_roles_for_query(classification, len(kept), query)]
        maps = self._maps(query_id, query, classification, kept, roles)
        map_ids = [m.id for m in maps]
        debate = SubQuery(
            id="sq-debate",
            kind=SubQueryKind.DEBATE,
            prompt=DEBATE_PROMPT.format(query=query),
            parent_id=query_id,
            depends_on=map_ids,
        )
        reduce = self._reduce(query_id, query, classification, map_ids + [debate.id])
        reduce.prompt += "\nAddress the identified tensions explicitly."
        return MapDebateReducePlan(
            query_id=query_id,
            query=query,
            classification=classification,
            relevance=self._relevance(kept),
            truncated=dropped,
            reason="perspectives diverge; surface tensions before synthesis",
            maps=maps,
            debate=debate,
            reduce=reduce,
        )

    def _iterative(
        self,
        query_id: str,
        query: str,
        classification: Classification,
        relevant: list[ScoredAgent],
    ) -> IterativePlan:
        initial = SubQuery(
            id="sq-initial",
            kind=SubQueryKind.INITIAL,
            prompt=query,
            parent_id=query_id,
            target_agent_ids=[s.agent.id for s in relevant[:ITERATIVE_INITIAL_AGENTS]],
            context_level=ContextLevel.SUMMARY,
        )
        follow_up = SubQuery(
            id="sq-followup",
            kind=SubQueryKind.FOLLOW_UP,
            prompt=FOLLOW_UP_PROMPT.format(query=query),
            parent_id=query_id,
            target_agent_ids=[s.agent.id for s in relevant],
            context_level=ContextLevel.FULL,
            depends_on=[initial.id],
        )
        return IterativePlan(
            query_id=query_id,
            query=query,
            classification=classification,
            relevance=self._relevance(relevant),
            reason="exploratory query may need a second pass",
            initial=initial,
            follow_up=follow_up,
        )

    # ------------------------------------------------------------------
    # Group compaction
    # ------------------------------------------------------------------

    def group_eligible(self, plan: Plan, store: ContextStore) -> bool:
        if not self.config.enable_group_decomposition:
            return False
        if plan.strategy not in (Strategy.PARALLEL, Strategy.MAP_REDUCE, Strategy.MAP_DEBATE_REDUCE):
            return False
        relevant = plan.relevant_agent_ids
        if len(relevant) < self.config.group_min_agents:
            return False
        group_ids = {self._group_of(agent_id, store) for agent_id in relevant}
        group_ids.discard(None)
        return len(group_ids) >= self.config.group_min_groups

    @staticmethod
    def _group_of(agent_id: str, store: ContextStore) -> Optional[str]:
        agent = store.get(agent_id)
        if agent is None or agent.group_id is None or store.get_group(agent.group_id) is None:
            return None
        return agent.group_id

    def compact_to_groups(self, plan: Plan, store: ContextStore) -> GroupPlan:
        """Replace per-agent sub-queries with one per group plus an ungrouped bundle.

        Keeps the source plan's reduce (and debate) steps, so ordering
        guarantees carry over.
        """
        classification = plan.classification
        query = plan.query
        buckets: dict[Optional[str], list[str]] = {}
        for agent_id in plan.relevant_agent_ids:
            buckets.setdefault(self._group_of(agent_id, store), []).append(agent_id)

        has_reduce = plan.strategy in (Strategy.MAP_REDUCE, Strategy.MAP_DEBATE_REDUCE)
        has_debate = plan.strategy == Strategy.MAP_DEBATE_REDUCE
        reserved = int(has_reduce) + int(has_debate)

        # Groups in order of their best member's relevance
        ordered = sorted(
            buckets.items(),
            key=lambda item: max(plan.relevance.get(a, 0.0) for a in item[1]),
            reverse=True,
        )
        limit = max(1, self.config.max_sub_queries - reserved)
        dropped_agents = sum(len(ids) for _, ids in ordered[limit:])
        ordered = ordered[:limit]

        template = (
            MAP_PROMPTS.get(classification.type, MAP_PROMPTS[QueryType.FACTUAL])
            if has_reduce
            else "{query}"
        )
        groups: list[SubQuery] = []
        for group_id, agent_ids in ordered:
            if group_id is None:
                label, role, sq_id = "Ungrouped sources", None, "sq-ungrouped"
            else:
                group = store.get_group(group_id)
                label, role, sq_id = group.name, role_for_group(group).id, f"sq-group-{group_id}"
            prompt = f'Across the "{label}" sources: ' + template.format(query=query)
            groups.append(SubQuery(
                id=sq_id,
                kind=SubQueryKind.GROUP,
                prompt=self._framed(prompt, role),
                parent_id=plan.query_id,
                target_agent_ids=list(agent_ids),
                group_id=group_id,
                perspective=role,
                context_level=ContextLevel.SUMMARY if len(agent_ids) > 2 else self._level(classification),
                label=label,
                relevance=max(plan.relevance.get(a, 0.0) for a in agent_ids),
            ))

        group_ids = [g.id for g in groups]
        debate = None
        if has_debate:
            debate = SubQuery(
                id="sq-debate",
                kind=SubQueryKind.DEBATE,
                prompt=DEBATE_PROMPT.format(query=query),
                parent_id=plan.query_id,
                depends_on=group_ids,
            )
        reduce = None
        if has_reduce:
            reduce = self._reduce(plan.query_id, query, classification, group_ids + ([debate.id] if debate else []))
            if debate:
                reduce.prompt += "\nAddress the identified tensions explicitly."

        kept = {a for _, ids in ordered for a in ids}
        logger.info(
            f"Group compaction: {plan.total_sub_queries} -> {len(groups) + reserved} sub-queries "
            f"({len(groups)} groups)"
        )
        return GroupPlan(
            query_id=plan.query_id,
            query=query,
            classification=classification,
            relevance={a: s for a, s in plan.relevance.items() if a in kept},
            truncated=plan.truncated + dropped_agents,
            reason=f"group-level bundling of {plan.strategy.value}",
            groups=groups,
            debate=debate,
            reduce=reduce,
            source_strategy=plan.strategy,
        )
