"""Tests for combining sub-answers into the final response."""

import pytest

from rlmkit.config.schema import RLMConfig
from rlmkit.rlm.aggregator import TRUNCATION_MARKER, Aggregator
from rlmkit.rlm.models import (
    AggregationResult,
    ConflictReport,
    ExecutionResult,
    PairAnalysis,
    PairRelation,
    SubQueryKind,
)


def _result(sub_query_id, text, names=(), success=True, kind=SubQueryKind.MAP):
    return ExecutionResult(
        sub_query_id=sub_query_id,
        kind=kind,
        response=text,
        source_names=list(names),
        success=success,
    )


@pytest.fixture
def aggregator(config):
    return Aggregator(config)


class TestAggregate:
    """Test the aggregation paths."""

    @pytest.mark.asyncio
    async def test_single_answer_is_returned_verbatim(self, aggregator, fake_llm):
        """Test that a lone usable answer comes back untouched."""
        result = await aggregator.aggregate(
            "q",
            [_result("sq-0", "  The budget is 50k.  ", ["Q3 Planning"]), _result("sq-1", "", success=False)],
            fake_llm,
        )
        assert result.aggregation_type == "single"
        assert result.response == "  The budget is 50k.  "
        assert result.sources == ["Q3 Planning"]
        assert fake_llm.call_count == 0

    @pytest.mark.asyncio
    async def test_single_long_answer_is_not_truncated(self, fake_llm):
        """A lone answer is never cut to max_final_length."""
        aggregator = Aggregator(RLMConfig(max_final_length=100))
        text = "The launch slipped. " * 20
        result = await aggregator.aggregate("q", [_result("sq-0", text, ["Vendor Sync"])], fake_llm)

        assert result.response == text
        assert TRUNCATION_MARKER not in result.response

    @pytest.mark.asyncio
    async def test_duplicates_collapse_to_one(self, aggregator, fake_llm):
        """Test that near-identical answers collapse without a synthesis call."""
        result = await aggregator.aggregate(
            "q",
            [_result("sq-0", "The launch moved to April."), _result("sq-1", "The launch moved to April.")],
            fake_llm,
        )
        assert result.aggregation_type == "single"
        assert result.deduplicated == 1
        assert result.source_count == 2
        assert fake_llm.call_count == 0

    @pytest.mark.asyncio
    async def test_distinct_answers_are_synthesized(self, aggregator, fake_llm):
        """Test synthesizing distinct answers in one call."""
        result = await aggregator.aggregate(
            "What changed?",
            [
                _result("sq-0", "The budget is capped at 50k.", ["Q3 Planning"]),
                _result("sq-1", "Vendor delays put the launch at risk.", ["Vendor Sync"]),
            ],
            fake_llm,
        )
        assert result.aggregation_type == "synthesis"
        assert result.response == "synthesis answer"
        assert result.sources == ["Q3 Planning", "Vendor Sync"]
        assert result.input_tokens == 100
        call = fake_llm.calls[0]
        assert call["context"]["sub_query_id"] == "synthesis"
        assert "[Vendor Sync]\nVendor delays put the launch at risk." in call["user"]

    @pytest.mark.asyncio
    async def test_failed_synthesis_falls_back_to_merge(self, aggregator, make_llm):
        """Test falling back to a plain merge when synthesis fails."""
        llm = make_llm(fail_times=10)
        result = await aggregator.aggregate(
            "q",
            [_result("sq-0", "Budget capped.", ["Q3 Planning"]), _result("sq-1", "Launch slipped.", ["Vendor Sync"])],
            llm,
        )
        assert result.aggregation_type == "merge"
        assert result.response.startswith("Based on 2 sources:")
        assert "**From Vendor Sync:**\nLaunch slipped." in result.response
        assert llm.call_count == 3

    @pytest.mark.asyncio
    async def test_synthesis_can_be_disallowed(self, aggregator, fake_llm):
        """Test merging without calling the model."""
        result = await aggregator.aggregate(
            "q",
            [_result("sq-0", "Budget capped."), _result("sq-1", "Launch slipped.")],
            fake_llm,
            allow_synthesis=False,
        )
        assert result.aggregation_type == "merge"
        assert fake_llm.call_count == 0

    @pytest.mark.asyncio
    async def test_conflicts_add_tension_instructions(self, aggregator, fake_llm):
        """Test that detected conflicts reach the synthesis prompt."""
        conflicts = ConflictReport(
            pairs=[PairAnalysis("sq-0", "sq-1", PairRelation.CONFLICT, confidence=0.8, similarity=0.2)],
            summary="Found 1 conflicting and 0 agreeing pairs.",
        )
        await aggregator.aggregate(
            "q",
            [_result("sq-0", "Budget capped."), _result("sq-1", "Launch slipped.")],
            fake_llm,
            conflicts=conflicts,
        )
        call = fake_llm.calls[0]
        assert "the sources disagree" in call["system"]
        assert "Address these tensions explicitly" in call["user"]

    @pytest.mark.asyncio
    async def test_reduce_answer_wins(self, aggregator, fake_llm):
        """Test that a successful reduce answer is used as is."""
        reduce = _result("sq-reduce", "Reduced answer.", kind=SubQueryKind.REDUCE)
        result = await aggregator.aggregate(
            "q",
            [_result("sq-0", "A", ["Q3 Planning"]), _result("sq-1", "B", ["Vendor Sync"])],
            fake_llm,
            reduce_result=reduce,
        )
        assert result.aggregation_type == "reduce"
        assert result.response == "Reduced answer."
        assert result.source_count == 2

    @pytest.mark.asyncio
    async def test_nothing_usable(self, aggregator, fake_llm):
        """Test the empty aggregation."""
        result = await aggregator.aggregate("q", [_result("sq-0", "", success=False)], fake_llm)
        assert result.aggregation_type == "empty"


class TestFormatting:
    """Test truncation and display formatting."""

    def test_long_answers_are_truncated(self):
        """Test truncation to max_final_length."""
        aggregator = Aggregator(RLMConfig(max_final_length=100))
        text = aggregator.truncate("x" * 500)
        assert text.endswith(TRUNCATION_MARKER)
        assert len(text) == 100

    def test_footer_lists_unnamed_sources(self):
        """Test the sources footer."""
        aggregation = AggregationResult(response="Answer", aggregation_type="synthesis", sources=["Vendor Sync"])
        assert Aggregator.format_for_display(aggregation) == "Answer\n\n*Sources: Vendor Sync*"

    def test_no_footer_when_sources_are_named(self):
        """Test omitting the footer when every source is named."""
        aggregation = AggregationResult(
            response="Per Vendor Sync, the launch slipped.", aggregation_type="synthesis", sources=["Vendor Sync"]
        )
        assert Aggregator.format_for_display(aggregation) == "Per Vendor Sync, the launch slipped."

    def test_source_names_are_unique_and_ordered(self):
        """Test collecting source names in first-seen order."""
        names = Aggregator.source_names([
            _result("sq-0", "a", ["B", "A"]),
            _result("sq-1", "b", ["A", "C"]),
        ])
        assert names == ["B", "A", "C"]

    def test_single_answer_has_no_footer(self):
        """A single answer is displayed exactly as it came back."""
        aggregation = AggregationResult(response="Answer", aggregation_type="single", sources=["Vendor Sync"])
        assert Aggregator.format_for_display(aggregation) == "Answer"
