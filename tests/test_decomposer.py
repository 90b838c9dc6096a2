"""Tests for query classification and plan decomposition."""

import pytest

from rlmkit.config.schema import RLMConfig
from rlmkit.context.models import Agent, Group, GroupKind
from rlmkit.context.store import ContextStore
from rlmkit.errors import ClassificationAmbiguous
from rlmkit.rlm.classifier import QueryClassifier
from rlmkit.rlm.decomposer import QueryDecomposer
from rlmkit.rlm.models import (
    Complexity,
    DataPreference,
    DirectPlan,
    GroupPlan,
    IterativePlan,
    MapDebateReducePlan,
    MapReducePlan,
    ParallelPlan,
    QueryType,
    Strategy,
    SubQueryKind,
)

E2E_QUERY = "What decisions were made across all meetings?"


class TestQueryClassifier:
    """Test lexical intent detection."""

    def setup_method(self):
        self.classifier = QueryClassifier()

    @pytest.mark.parametrize("query,expected", [
        ("Compare the Q1 and Q2 budgets", QueryType.COMPARATIVE),
        (E2E_QUERY, QueryType.AGGREGATIVE),
        ("What patterns emerge in the feedback?", QueryType.ANALYTICAL),
        ("How has the roadmap evolved over time", QueryType.TEMPORAL),
        ("Find where the vendor was mentioned", QueryType.SEARCH),
        ("What was the budget?", QueryType.FACTUAL),
    ])
    def test_intent(self, query, expected):
        """Test intent detection."""
        assert self.classifier.classify(query).type == expected

    def test_simple_factual_query(self):
        """Test classifying a simple factual question."""
        result = self.classifier.classify("What was the budget?", agent_count=2)
        assert result.complexity == Complexity.SIMPLE
        assert result.exploratory is False

    def test_many_agents_raise_complexity(self):
        """Test that agent count raises complexity."""
        result = self.classifier.classify(E2E_QUERY, agent_count=5)
        assert result.complexity == Complexity.COMPLEX

    def test_two_way_tie_uses_precedence(self):
        """Test intent precedence on a two-way tie."""
        result = self.classifier.classify("Compare all sources")
        assert result.type == QueryType.COMPARATIVE
        assert result.ambiguous is False

    def test_three_way_tie_is_ambiguous(self):
        """Test that a three-way tie is ambiguous."""
        with pytest.raises(ClassificationAmbiguous) as exc:
            self.classifier.classify("Compare all patterns")
        assert exc.value.classification.ambiguous is True
        assert exc.value.classification.type == QueryType.COMPARATIVE

    def test_classify_safely_returns_best_effort(self):
        """Test the non-raising classifier."""
        result = self.classifier.classify_safely("Compare all patterns")
        assert result.ambiguous is True

    def test_format_and_data_preferences(self):
        """Test format and data preference detection."""
        result = self.classifier.classify("Give me a brief list of the exact quotes")
        assert "list" in result.format_constraints
        assert "brief" in result.format_constraints
        assert result.data_preference == DataPreference.DETAILED

    def test_exploratory_and_timeframe(self):
        """Test exploratory and timeframe detection."""
        result = self.classifier.classify("What happened recently? And who owns it?")
        assert result.exploratory is True
        assert result.mentions_timeframe is True


class TestStrategySelection:
    """Test which plan variant each query gets over the sample meetings."""

    def setup_method(self):
        self.decomposer = QueryDecomposer(RLMConfig())

    def test_simple_query_over_few_agents_is_direct(self):
        """Test the direct strategy."""
        store = ContextStore()
        store.load([
            Agent(id="a", display_name="Budget sync", summary="The budget is 50k."),
            Agent(id="b", display_name="Hiring sync", summary="Two engineers joined."),
        ])
        plan = self.decomposer.decompose("What was the budget?", store)
        assert isinstance(plan, DirectPlan)
        assert plan.total_sub_queries == 1
        assert plan.call.kind == SubQueryKind.DIRECT

    def test_single_relevant_agent_is_direct(self, store):
        """Test that one relevant agent gives a direct plan."""
        plan = self.decomposer.decompose("What was the budget?", store)
        assert isinstance(plan, DirectPlan)
        assert plan.call.target_agent_ids == ["m1"]

    def test_aggregate_over_every_agent_is_map_reduce(self, store):
        """Test the map-reduce strategy and its sub-query count."""
        plan = self.decomposer.decompose(E2E_QUERY, store)
        assert isinstance(plan, MapReducePlan)
        assert len(plan.maps) == 5
        assert plan.total_sub_queries == 6
        assert plan.reduce.depends_on == [m.id for m in plan.maps]
        assert {m.target_agent_ids[0] for m in plan.maps} == set(store.active_ids())

    def test_comparative_is_parallel_with_perspectives(self, store):
        """Test the parallel strategy."""
        plan = self.decomposer.decompose("Compare the vendor sync and the launch retro", store)
        assert isinstance(plan, ParallelPlan)
        assert [c.id for c in plan.calls] == ["sq-0", "sq-1"]
        assert {c.target_agent_ids[0] for c in plan.calls} == {"m3", "m5"}
        assert [c.perspective for c in plan.calls] == ["analyst", "critic"]

    def test_analytical_over_many_agents_debates(self, store):
        """Test the map-debate-reduce strategy."""
        plan = self.decomposer.decompose("What patterns emerge across the meetings?", store)
        assert isinstance(plan, MapDebateReducePlan)
        assert plan.total_sub_queries == 7
        assert plan.debate.depends_on == [m.id for m in plan.maps]
        assert plan.debate.id in plan.reduce.depends_on
        assert len({m.perspective for m in plan.maps}) == 4

    def test_debate_can_be_disabled(self, store):
        """Test disabling the debate phase."""
        decomposer = QueryDecomposer(RLMConfig(enable_debate_phase=False))
        plan = decomposer.decompose("What patterns emerge across the meetings?", store)
        assert plan.strategy == Strategy.MAP_REDUCE

    def test_exploratory_query_is_iterative(self, store):
        """Test the iterative strategy."""
        plan = self.decomposer.decompose("What happened with the launch? And what did the vendor say?", store)
        assert isinstance(plan, IterativePlan)
        assert plan.total_sub_queries == 2
        assert plan.follow_up.depends_on == [plan.initial.id]

    def test_ambiguous_query_falls_back_to_direct(self, store):
        """Test the fallback for an ambiguous query."""
        plan = self.decomposer.decompose("Compare all patterns", store)
        assert isinstance(plan, DirectPlan)
        assert plan.reason == "ambiguous classification"
        assert plan.classification.ambiguous is True

    def test_no_agents_is_direct(self):
        """Test planning with no agents."""
        plan = self.decomposer.decompose(E2E_QUERY, ContextStore())
        assert isinstance(plan, DirectPlan)
        assert plan.call.target_agent_ids == []

    def test_planning_does_not_mutate_store(self, store):
        """Test that planning leaves the store untouched."""
        version = store.version
        self.decomposer.decompose(E2E_QUERY, store)
        assert store.version == version


class TestSubQueryCeiling:
    """Test that plans never exceed max_sub_queries."""

    def _many_agents(self, count):
        store = ContextStore()
        store.load([
            Agent(id=f"a{i:02d}", display_name=f"Meeting {i}", summary=f"Decisions from meeting {i}.")
            for i in range(count)
        ])
        return store

    def test_map_reduce_keeps_room_for_reduce(self):
        """Test that the ceiling keeps the reduce step."""
        decomposer = QueryDecomposer(RLMConfig(max_sub_queries=4, enable_group_decomposition=False))
        plan = decomposer.decompose(E2E_QUERY, self._many_agents(10))
        assert plan.total_sub_queries == 4
        assert plan.truncated == 7
        assert len(plan.relevance) == 3

    def test_debate_plan_is_capped(self):
        """Test the ceiling on a debate plan."""
        decomposer = QueryDecomposer(RLMConfig(max_sub_queries=3))
        plan = decomposer.decompose("Compare the decisions from each meeting", self._many_agents(8))
        assert plan.total_sub_queries <= 3


class TestGroupCompaction:
    """Test per-group bundling of large plans."""

    def _grouped_store(self, meetings):
        store = ContextStore()
        agents = [Agent.from_dict(m) for m in meetings]
        agents.append(Agent(id="m6", display_name="Budget Follow-up", summary="Budget revisited."))
        for agent in agents:
            agent.group_id = "g1" if agent.id in ("m1", "m2", "m5") else "g2"
        store.load(agents, [
            Group(id="g1", name="Product", kind=GroupKind.THEMATIC),
            Group(id="g2", name="Operations"),
        ])
        return store

    def test_map_reduce_compacts_to_groups(self, meetings):
        """Test group compaction."""
        decomposer = QueryDecomposer(RLMConfig())
        plan = decomposer.decompose(E2E_QUERY, self._grouped_store(meetings))

        assert isinstance(plan, GroupPlan)
        assert plan.source_strategy == Strategy.MAP_REDUCE
        assert {g.id for g in plan.groups} == {"sq-group-g1", "sq-group-g2"}
        assert plan.reduce is not None and plan.debate is None
        assert plan.total_sub_queries == 3
        assert all(g.kind == SubQueryKind.GROUP for g in plan.groups)

    def test_ungrouped_agents_get_a_bundle(self, meetings):
        """Test bundling agents outside any group."""
        store = self._grouped_store(meetings)
        store.assign_group("m4", None)
        plan = QueryDecomposer(RLMConfig()).decompose(E2E_QUERY, store)
        assert "sq-ungrouped" in {g.id for g in plan.groups}
        ungrouped = next(g for g in plan.groups if g.id == "sq-ungrouped")
        assert ungrouped.target_agent_ids == ["m4"]

    def test_compaction_can_be_disabled(self, meetings):
        """Test disabling group compaction."""
        decomposer = QueryDecomposer(RLMConfig(enable_group_decomposition=False))
        plan = decomposer.decompose(E2E_QUERY, self._grouped_store(meetings))
        assert isinstance(plan, MapReducePlan)
        assert plan.total_sub_queries == 7
