"""Result Aggregation - combine sub-answers into one response."""

from typing import Optional

from loguru import logger

from rlmkit.config.schema import RLMConfig
from rlmkit.context.store import ContextStore
from rlmkit.errors import RLMError
from rlmkit.prompt.builder import PromptBuilder
from rlmkit.rlm.calls import CallFn, RetryPolicy, invoke
from rlmkit.rlm.executor import MemoryContext, SubExecutor
from rlmkit.rlm.models import (
    AggregationResult,
    Classification,
    CodePlan,
    ConflictReport,
    DirectPlan,
    ExecutionResult,
    Plan,
    QueryType,
)
from rlmkit.utils.text import jaccard_similarity

SYNTHESIS_INSTRUCTIONS = """You are synthesizing information from multiple sources to answer the user's question.

Instructions:
- Combine the information coherently
- Resolve any conflicting information by noting the discrepancy
- Be concise but comprehensive
- Cite which source information came from when relevant
- Use bullet points for lists"""

INTENT_INSTRUCTIONS: dict[QueryType, str] = {
    QueryType.FACTUAL: "- Focus on providing a clear, factual answer",
    QueryType.COMPARATIVE: "- Highlight similarities and differences between sources",
    QueryType.AGGREGATIVE: "- Compile a complete list without duplicates",
    QueryType.ANALYTICAL: "- Identify overarching patterns and themes",
    QueryType.TEMPORAL: "- Present information in chronological order if possible",
    QueryType.SEARCH: "- Quote the matching passages and name where each was found",
}

TENSION_INSTRUCTIONS = (
    "- IMPORTANT: the sources disagree. Acknowledge the disagreement explicitly\n"
    "- Present the strongest argument from each side before synthesizing"
)

TRUNCATION_MARKER = "\n\n...[Response truncated for length]"
EMPTY_RESPONSE = "I couldn't find an answer to that in the loaded sources."


class Aggregator:
    """Turn a plan's results into the final response."""

    def __init__(self, config: Optional[RLMConfig] = None, prompt_builder: Optional[PromptBuilder] = None):
        self.config = config or RLMConfig()
        self.prompt_builder = prompt_builder or PromptBuilder(self.config.prompt)
        self.retry = RetryPolicy.from_config(self.config)

    async def aggregate(
        self,
        query: str,
        results: list[ExecutionResult],
        call_fn: CallFn,
        classification: Optional[Classification] = None,
        conflicts: Optional[ConflictReport] = None,
        reduce_result: Optional[ExecutionResult] = None,
        memory: Optional[MemoryContext] = None,
        allow_synthesis: bool = True,
        depth: int = 0,
    ) -> AggregationResult:
        """Combine ``results`` (sibling answers) into one response.

        A successful reduce step already is the synthesis, so its answer is
        used as is. Otherwise a single answer is returned verbatim and
        several are deduplicated and synthesized, falling back to a plain
        merge when the synthesis call fails or is not allowed.
        """
        usable = [r for r in results if r.success and r.response.strip()]
        sources = self.source_names(usable)

        if reduce_result is not None and reduce_result.success and reduce_result.response.strip():
            return AggregationResult(
                response=self.truncate(reduce_result.response.strip()),
                aggregation_type="reduce",
                source_count=len(usable),
                sources=sources,
            )

        if not usable:
            return AggregationResult(response=EMPTY_RESPONSE, aggregation_type="empty")

        if len(usable) == 1:
            return AggregationResult(
                response=usable[0].response,
                aggregation_type="single",
                source_count=1,
                sources=sources,
            )

        unique = self.deduplicate(usable)
        deduplicated = len(usable) - len(unique)
        if len(unique) == 1:
            return AggregationResult(
                response=unique[0].response,
                aggregation_type="single",
                source_count=len(usable),
                deduplicated=deduplicated,
                sources=sources,
            )

        if allow_synthesis:
            try:
                synthesized = await self._synthesize(query, unique, call_fn, classification, conflicts, memory, depth)
                synthesized.source_count = len(usable)
                synthesized.deduplicated = deduplicated
                synthesized.sources = sources
                return synthesized
            except RLMError as e:
                logger.warning(f"Synthesis failed ({e.kind.value}), falling back to simple merge")

        return AggregationResult(
            response=self.simple_merge(unique),
            aggregation_type="merge",
            source_count=len(usable),
            deduplicated=deduplicated,
            sources=sources,
        )

    async def _synthesize(
        self,
        query: str,
        results: list[ExecutionResult],
        call_fn: CallFn,
        classification: Optional[Classification],
        conflicts: Optional[ConflictReport],
        memory: Optional[MemoryContext],
        depth: int,
    ) -> AggregationResult:
        instructions = [SYNTHESIS_INSTRUCTIONS]
        if classification is not None and classification.type in INTENT_INSTRUCTIONS:
            instructions.append(INTENT_INSTRUCTIONS[classification.type])
        task = f'Answer: "{query}"'
        if conflicts is not None and conflicts.has_conflicts:
            instructions.append(TENSION_INSTRUCTIONS)
            task += f"\n\n{conflicts.summary}\nAddress these tensions explicitly in your response."

        memory = memory or MemoryContext()
        built = self.prompt_builder.build(
            task=task,
            system_instructions="\n".join(instructions),
            state_block=memory.state_block,
            working_window=memory.working_window,
            slices=memory.slices,
            local_context=SubExecutor.format_results(results),
            max_tokens=self.config.tokens_per_sub_query,
        )
        logger.info(f"Synthesizing {len(results)} sub-answers")
        outcome = await invoke(
            call_fn,
            built.system_prompt,
            built.user_content,
            {
                "sub_query_id": "synthesis",
                "kind": "synthesis",
                "depth": depth,
                "max_tokens": self.prompt_builder.config.response_reserve,
            },
            timeout=self.config.reduce_timeout,
            policy=self.retry,
        )
        return AggregationResult(
            response=self.truncate(outcome.text.strip()),
            aggregation_type="synthesis",
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
        )

    # ------------------------------------------------------------------
    # Early stop
    # ------------------------------------------------------------------

    def should_early_stop(self, plan: Plan, store: ContextStore) -> bool:
        """True when a couple of strongly matching sources make the full plan unnecessary."""
        if not self.config.enable_early_stop or isinstance(plan, (DirectPlan, CodePlan)):
            return False
        agent_ids = plan.relevant_agent_ids
        if not agent_ids or len(agent_ids) > self.config.early_stop_max_slices:
            return False
        coverage = [
            store.keyword_coverage(agent, plan.query)
            for agent in (store.get(a) for a in agent_ids)
            if agent is not None
        ]
        return bool(coverage) and min(coverage) >= self.config.early_stop_min_relevance

    async def synthesize_from_slices(
        self,
        plan: Plan,
        store: ContextStore,
        call_fn: CallFn,
        memory: Optional[MemoryContext] = None,
        depth: int = 0,
    ) -> AggregationResult:
        """Answer directly from the plan's few relevant sources in one call.

        Raises:
            RLMError: the call failed; the caller should run the full plan.
        """
        agent_ids = plan.relevant_agent_ids
        budget = min(
            self.prompt_builder.config.local_context_tokens,
            self.prompt_builder.budget_for(self.config.tokens_per_sub_query),
        )
        local, _ = store.combined_context_with_budget(agent_ids, budget, self.config.context_level)
        memory = memory or MemoryContext()
        built = self.prompt_builder.build(
            task=plan.query,
            state_block=memory.state_block,
            working_window=memory.working_window,
            slices=memory.slices,
            local_context=local,
            max_tokens=self.config.tokens_per_sub_query,
        )
        logger.info(f"Early stop: answering from {len(agent_ids)} sources directly")
        outcome = await invoke(
            call_fn,
            built.system_prompt,
            built.user_content,
            {
                "sub_query_id": "early-stop",
                "kind": "direct",
                "depth": depth,
                "agent_ids": list(agent_ids),
                "max_tokens": self.prompt_builder.config.response_reserve,
            },
            timeout=self.config.call_timeout,
            policy=self.retry,
        )
        names = [a.display_name for a in (store.get(i) for i in agent_ids) if a is not None]
        return AggregationResult(
            response=self.truncate(outcome.text.strip()),
            aggregation_type="early_stop",
            source_count=len(names),
            sources=names,
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def deduplicate(self, results: list[ExecutionResult]) -> list[ExecutionResult]:
        """Drop answers nearly identical to an earlier one, keeping first-seen order."""
        kept: list[ExecutionResult] = []
        for result in results:
            duplicate = any(
                jaccard_similarity(existing.response, result.response, min_length=1) > self.config.dedup_threshold
                for existing in kept
            )
            if duplicate:
                logger.debug(f"Dropping near-duplicate answer from {result.sub_query_id}")
            else:
                kept.append(result)
        return kept

    def simple_merge(self, results: list[ExecutionResult]) -> str:
        parts = [
            f"**From {', '.join(r.source_names) or r.sub_query_id}:**\n{r.response.strip()}"
            for r in results
        ]
        return self.truncate(f"Based on {len(results)} sources:\n\n" + "\n\n---\n\n".join(parts))

    def truncate(self, text: str) -> str:
        limit = self.config.max_final_length
        if len(text) <= limit:
            return text
        return text[: max(0, limit - len(TRUNCATION_MARKER))] + TRUNCATION_MARKER

    @staticmethod
    def source_names(results: list[ExecutionResult]) -> list[str]:
        names: list[str] = []
        for result in results:
            for name in result.source_names:
                if name not in names:
                    names.append(name)
        return names

    @staticmethod
    def format_for_display(aggregation: AggregationResult) -> str:
        """The response with a sources footer when it doesn't already name every source.

        A single answer is shown exactly as it came back.
        """
        text = aggregation.response
        if aggregation.aggregation_type == "single":
            return text
        if aggregation.sources and not all(name in text for name in aggregation.sources):
            text += f"\n\n*Sources: {', '.join(aggregation.sources)}*"
        return text
