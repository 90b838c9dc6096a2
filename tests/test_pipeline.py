"""End-to-end tests for Pipeline.process."""

import asyncio

import pytest

from rlmkit.config.schema import RLMConfig
from rlmkit.errors import FAILURE_MESSAGES, ErrorKind
from rlmkit.rlm.events import EventType
from rlmkit.rlm.pipeline import NO_DATA_RESPONSE, Pipeline, ProcessOptions
from rlmkit.rlm.sandbox import SKIPPED_TEXT, RecursiveCallRequest

E2E_QUERY = "What decisions were made across all meetings?"


def _fail_for(sub_query_id):
    def responder(system, user, context):
        if context["sub_query_id"] == sub_query_id:
            raise RuntimeError("boom")
        return f"{context['sub_query_id']} answer"
    return responder


class TestProcess:
    """Test the main query flow."""

    @pytest.mark.asyncio
    async def test_aggregate_query_runs_map_reduce(self, pipeline, fake_llm, meeting_names):
        """Test a full map-reduce turn."""
        result = await pipeline.process(E2E_QUERY, fake_llm)

        assert result.success is True
        assert result.metadata.strategy == "map-reduce"
        assert result.metadata.total_sub_queries == 6
        assert result.metadata.aggregation_type == "reduce"
        assert fake_llm.call_count == 6
        assert fake_llm.sub_query_ids()[-1] == "sq-reduce"
        assert result.response.startswith("sq-reduce answer")
        assert any(name in result.response for name in meeting_names)
        assert result.metadata.input_tokens == 600

    @pytest.mark.asyncio
    async def test_no_agents_gives_no_data_response(self, config, fake_llm):
        """Test answering with no agents."""
        pipeline = Pipeline(config)
        result = await pipeline.process(E2E_QUERY, fake_llm)

        assert result.response == NO_DATA_RESPONSE
        assert result.success is True
        assert fake_llm.call_count == 0

    @pytest.mark.asyncio
    async def test_all_disabled_gives_no_data_response(self, pipeline, fake_llm):
        """Test answering with every agent disabled."""
        for agent_id in pipeline.store.active_ids():
            pipeline.store.set_enabled(agent_id, False)

        result = await pipeline.process(E2E_QUERY, fake_llm)
        assert result.response == NO_DATA_RESPONSE
        assert fake_llm.call_count == 0

    @pytest.mark.asyncio
    async def test_direct_plan_failure_is_reported(self, pipeline, make_llm):
        """Test the user-visible failure of a single-call plan."""
        llm = make_llm(fail_times=10)
        result = await pipeline.process("What was the budget?", llm)

        assert result.success is False
        assert result.metadata.error["kind"] == ErrorKind.UPSTREAM_CALL_FAILED.value
        assert "could not be reached" in result.response
        assert llm.call_count == 3
        assert pipeline.get_stats()["errors"] == 1

    @pytest.mark.asyncio
    async def test_partial_map_failure_still_answers(self, pipeline, make_llm):
        """Test answering from the surviving map results."""
        llm = make_llm(responder=_fail_for("sq-map-1"))
        result = await pipeline.process(E2E_QUERY, llm)

        assert result.success is True
        assert result.metadata.failed_queries == 1
        assert result.metadata.aggregation_type == "reduce"

    @pytest.mark.asyncio
    async def test_plan_timeout_with_no_results(self, meetings, make_llm):
        """Test a plan timeout with nothing completed."""
        pipeline = Pipeline(RLMConfig(plan_timeout=0.1, retry_delay=0.0))
        pipeline.load_agents(meetings)
        llm = make_llm(delay=0.5)

        result = await pipeline.process(E2E_QUERY, llm)
        # Let the detached workers finish
        await asyncio.sleep(0.6)

        assert result.success is False
        assert result.metadata.error["kind"] == ErrorKind.PLAN_TIMEOUT.value
        assert result.response == FAILURE_MESSAGES[ErrorKind.PLAN_TIMEOUT]
        assert result.metadata.timed_out is True
        assert len(pipeline.cache) == 0

    @pytest.mark.asyncio
    async def test_focused_call_answers_from_given_text(self, pipeline, fake_llm):
        """Test a focused call on local context."""
        result = await pipeline.process(
            "What was the budget?", fake_llm, ProcessOptions(depth=1, context_slice="The budget is 50k.")
        )
        assert result.success is True
        call = fake_llm.calls[0]
        assert "The budget is 50k." in call["user"]
        assert "Q3 Planning" not in call["user"]


class TestEarlyStop:
    """Test answering straight from strong sources."""

    @pytest.mark.asyncio
    async def test_two_strong_sources_answer_in_one_call(self, config, fake_llm):
        """Test the early stop."""
        pipeline = Pipeline(config)
        pipeline.load_agents([
            {"id": "a1", "displayName": "Budget Review", "summary": "The budget approval was granted for Q3."},
            {"id": "a2", "displayName": "Finance Sync", "summary": "Budget approval is still pending."},
            {"id": "a3", "displayName": "Design Review", "summary": "New mockups were shown."},
        ])

        result = await pipeline.process("Compare the budget approval", fake_llm)

        assert fake_llm.call_count == 1
        assert fake_llm.calls[0]["context"]["sub_query_id"] == "early-stop"
        assert result.metadata.early_stop is True
        assert result.metadata.aggregation_type == "early_stop"
        assert result.metadata.sources == ["Budget Review", "Finance Sync"]

    @pytest.mark.asyncio
    async def test_early_stop_can_be_disabled(self, fake_llm):
        """Test disabling the early stop."""
        pipeline = Pipeline(RLMConfig(enable_early_stop=False, retry_delay=0.0))
        pipeline.load_agents([
            {"id": "a1", "displayName": "Budget Review", "summary": "The budget approval was granted for Q3."},
            {"id": "a2", "displayName": "Finance Sync", "summary": "Budget approval is still pending."},
        ])
        result = await pipeline.process("Compare the budget approval", fake_llm)
        assert result.metadata.early_stop is False


class TestCache:
    """Test response caching across turns."""

    @pytest.mark.asyncio
    async def test_repeat_query_is_served_from_cache(self, pipeline, fake_llm):
        """Test serving a repeat query from cache."""
        first = await pipeline.process(E2E_QUERY, fake_llm)
        second = await pipeline.process(E2E_QUERY, fake_llm)

        assert fake_llm.call_count == 6
        assert second.cached is True
        assert second.response == first.response
        assert pipeline.get_stats()["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_agent_change_invalidates(self, pipeline, fake_llm):
        """Test cache invalidation on agent changes."""
        await pipeline.process(E2E_QUERY, fake_llm)
        pipeline.store.set_enabled("m2", False)

        result = await pipeline.process(E2E_QUERY, fake_llm)
        assert result.cached is False
        assert fake_llm.call_count > 6

    @pytest.mark.asyncio
    async def test_cache_can_be_bypassed(self, pipeline, fake_llm):
        """Test bypassing the cache."""
        await pipeline.process(E2E_QUERY, fake_llm)
        await pipeline.process(E2E_QUERY, fake_llm, ProcessOptions(use_cache=False))
        assert fake_llm.call_count == 12


class TestRecursion:
    """Test sandboxed programs and the depth ceiling."""

    @pytest.mark.asyncio
    async def test_program_makes_a_nested_call(self, pipeline, fake_llm):
        """A program's sub_lm call runs a nested pipeline and gets its answer back."""
        def program(api):
            return "Nested: " + api.sub_lm("What was the budget?")

        result = await asyncio.wait_for(
            pipeline.process("Summarize the budget", fake_llm, ProcessOptions(program=program)),
            timeout=5,
        )

        assert result.success is True
        assert result.metadata.strategy == "code"
        assert result.response.startswith("Nested: sq-0 answer")
        assert pipeline.get_stats()["recursion_calls"] == 1

    @pytest.mark.asyncio
    async def test_program_at_ceiling_keeps_partial_answer(self, fake_llm, meetings):
        """A nested call refused at the ceiling is skipped and the turn still succeeds."""
        pipeline = Pipeline(RLMConfig(max_depth=1, retry_delay=0.0))
        pipeline.load_agents(meetings)

        def program(api):
            return "Partial analysis done. " + api.sub_lm("deeper question")

        result = await asyncio.wait_for(
            pipeline.process("q", fake_llm, ProcessOptions(program=program)),
            timeout=5,
        )

        assert result.success is True
        assert result.response == f"Partial analysis done. {SKIPPED_TEXT}"
        assert result.metadata.error is None
        assert fake_llm.call_count == 0
        assert pipeline.get_stats()["errors"] == 0

    @pytest.mark.asyncio
    async def test_program_can_fall_back_when_refused(self, pipeline, fake_llm):
        """try_sub_lm returns None at the ceiling so the program can use its own answer."""
        def program(api):
            return api.try_sub_lm("deeper") or "fallback answer"

        result = await asyncio.wait_for(
            pipeline.process("q", fake_llm, ProcessOptions(program=program, depth=2)),
            timeout=5,
        )
        assert result.success is True
        assert result.response.startswith("fallback answer")

    @pytest.mark.asyncio
    async def test_host_refuses_requests_at_the_ceiling(self, pipeline, fake_llm):
        """A request whose depth equals max_depth is refused without calling the model."""
        response = await pipeline._recursive_call(
            RecursiveCallRequest(call_id="c1", query="q", depth=3),
            fake_llm,
            lambda event_type, data: None,
        )

        assert response.success is False
        assert response.error_kind == ErrorKind.RECURSION_LIMIT_EXCEEDED.value
        assert fake_llm.call_count == 0
        assert pipeline.get_stats()["recursion_limit_hits"] == 1

    @pytest.mark.asyncio
    async def test_depth_at_limit_is_rejected(self, pipeline, fake_llm):
        """process() at depth == max_depth fails with RecursionLimitExceeded."""
        result = await pipeline.process("What was the budget?", fake_llm, ProcessOptions(depth=3))
        assert result.success is False
        assert result.metadata.error["kind"] == ErrorKind.RECURSION_LIMIT_EXCEEDED.value
        assert result.metadata.error["depth"] == 3
        assert fake_llm.call_count == 0

    @pytest.mark.asyncio
    async def test_depth_below_limit_runs(self, pipeline, fake_llm):
        """The deepest allowed level is max_depth - 1."""
        result = await pipeline.process("What was the budget?", fake_llm, ProcessOptions(depth=2))
        assert result.success is True
        assert fake_llm.call_count >= 1


class TestSessionState:
    """Test history, events and stats."""

    @pytest.mark.asyncio
    async def test_turns_update_history_and_window(self, pipeline, fake_llm):
        """Test turn recording."""
        await pipeline.process(E2E_QUERY, fake_llm)
        await pipeline.process(E2E_QUERY, fake_llm)

        history = pipeline.memory.history
        assert len(history) == 2
        assert history[0].cached is False
        assert history[1].cached is True
        assert pipeline.memory.working_window.user_turns[0] == E2E_QUERY

    @pytest.mark.asyncio
    async def test_nested_calls_do_not_record_turns(self, pipeline, fake_llm):
        """Test that nested calls leave history alone."""
        await pipeline.process("q", fake_llm, ProcessOptions(depth=1, context_slice="Some text."))
        assert pipeline.memory.history == []

    @pytest.mark.asyncio
    async def test_progress_events(self, pipeline, fake_llm):
        """Test pipeline progress events."""
        seen = []
        pipeline.set_progress_callback(seen.append)

        await pipeline.process(E2E_QUERY, fake_llm)
        await asyncio.sleep(0)

        types = [e.type for e in seen]
        assert types[0] == EventType.QUERY_RECEIVED
        assert EventType.PLAN_CREATED in types
        assert types.count(EventType.SUB_QUERY_FINISHED) == 6
        assert types[-1] == EventType.COMPLETED

        drained = pipeline.events.drain()
        assert [e.type for e in drained] == types

    @pytest.mark.asyncio
    async def test_stats(self, pipeline, fake_llm):
        """Test pipeline stats."""
        await pipeline.process(E2E_QUERY, fake_llm)
        stats = pipeline.get_stats()

        assert stats["queries"] == 1
        assert stats["sub_queries_executed"] == 6
        assert stats["context"]["active_agents"] == 5
        assert stats["memory"]["turns"] == 1
        assert stats["prompt"]["fallbacks"] == 0

    def test_plan_without_executing(self, pipeline):
        """Test planning without execution."""
        plan = pipeline.plan(E2E_QUERY)
        assert plan.strategy.value == "map-reduce"
