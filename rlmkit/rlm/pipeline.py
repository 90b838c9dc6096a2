"""Pipeline - the façade that answers one query end to end.

    cache lookup -> decompose -> (early stop | execute) -> detect conflicts
    -> aggregate -> capture memory -> cache store

Nothing raised inside a step reaches the caller. Sub-query failures
become failed results, and the few failures a user must see (a plan
that timed out with nothing to show, a single-call plan whose call
failed) come back as ``PipelineResult(success=False)`` with a
plain-language message and structured detail in ``metadata.error``.
"""

import time
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

from loguru import logger

from rlmkit.config.schema import RLMConfig
from rlmkit.context.models import Agent, ContextLevel, Group
from rlmkit.errors import (
    FAILURE_MESSAGES,
    ErrorKind,
    PlanTimeout,
    RecursionLimitExceeded,
    RLMError,
    error_for_kind,
)
from rlmkit.prompt.builder import PromptBuilder
from rlmkit.rlm.aggregator import Aggregator
from rlmkit.rlm.calls import CallFn
from rlmkit.rlm.classifier import QueryClassifier
from rlmkit.rlm.conflicts import ConflictDetector
from rlmkit.rlm.decomposer import QueryDecomposer
from rlmkit.rlm.events import EventChannel, EventType, ProgressCallback, ProgressEvent
from rlmkit.rlm.executor import ExecutionContext, ExecutionOutcome, MemoryContext, SubExecutor
from rlmkit.rlm.models import (
    AggregationResult,
    CodePlan,
    ConflictReport,
    DirectPlan,
    ExecutionResult,
    IterativePlan,
    PipelineResult,
    Plan,
    ResponseMetadata,
    SubQuery,
    SubQueryKind,
)
from rlmkit.rlm.sandbox import (
    RecursiveCallRequest,
    RecursiveCallResponse,
    SandboxProgram,
    SandboxRunner,
)
from rlmkit.rlm.session import Session

NO_DATA_RESPONSE = (
    "There are no sources loaded yet, so there is nothing to answer from. "
    "Add or enable at least one source and ask again."
)


@dataclass
class ProcessOptions:
    """Per-call options for ``Pipeline.process``."""
    program: Optional[SandboxProgram] = None  # Runs the query as sandboxed code
    use_cache: bool = True
    depth: int = 0  # Set by recursive calls
    context_slice: str = ""  # Focused recursive call: answer from this text only

    @property
    def mode(self) -> str:
        return "code" if self.program is not None else "auto"


class Pipeline:
    """Recursive query orchestration over a set of knowledge agents."""

    def __init__(
        self,
        config: Optional[RLMConfig] = None,
        session: Optional[Session] = None,
        sandbox: Optional[SandboxRunner] = None,
    ):
        self.config = config or (session.config if session else RLMConfig())
        self.session = session or Session(self.config)
        self.prompt_builder = PromptBuilder(self.config.prompt)
        self.classifier = QueryClassifier()
        self.decomposer = QueryDecomposer(self.config, self.classifier)
        self.executor = SubExecutor(
            self.config,
            self.prompt_builder,
            sandbox or SandboxRunner(self.config.sandbox, max_depth=self.config.max_depth),
        )
        self.detector = ConflictDetector()
        self.aggregator = Aggregator(self.config, self.prompt_builder)

    # ------------------------------------------------------------------
    # Inbound interface
    # ------------------------------------------------------------------

    @property
    def store(self):
        return self.session.store

    @property
    def memory(self):
        return self.session.memory

    @property
    def cache(self):
        return self.session.cache

    @property
    def events(self) -> EventChannel:
        return self.session.events

    def load_agents(
        self,
        agents: Iterable[Union[Agent, dict[str, Any]]],
        groups: Iterable[Union[Group, dict[str, Any]]] = (),
    ) -> None:
        """Replace the agent set. Plain dicts are accepted in either key style."""
        self.store.load(
            [a if isinstance(a, Agent) else Agent.from_dict(a) for a in agents],
            [g if isinstance(g, Group) else Group.from_dict(g) for g in groups],
        )

    def set_progress_callback(self, callback: Optional[ProgressCallback]) -> None:
        """Replace the progress subscriber; ``None`` removes it."""
        self.events.clear_subscribers()
        if callback is not None:
            self.events.subscribe(callback)

    def clear_cache(self) -> int:
        return self.cache.invalidate_all()

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.session.snapshot(),
            "prompt": {
                "fallbacks": self.prompt_builder.fallback_count,
                "overflows": self.prompt_builder.overflow_count,
            },
        }

    def plan(self, query: str) -> Plan:
        """Decompose ``query`` without executing anything."""
        return self.decomposer.decompose(query, self.store)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(
        self,
        query: str,
        call_fn: CallFn,
        options: Optional[ProcessOptions] = None,
    ) -> PipelineResult:
        opts = options or ProcessOptions()
        started = time.perf_counter()
        query_id = f"q-{uuid.uuid4().hex[:8]}"
        stats = self.session.stats
        if opts.depth == 0:
            stats.queries += 1

        def emit(event_type: EventType, data: dict[str, Any]) -> None:
            self.events.publish(ProgressEvent(type=event_type, data=data, query_id=query_id, depth=opts.depth))

        emit(EventType.QUERY_RECEIVED, {"query": query})

        if opts.depth >= self.config.max_depth:
            stats.recursion_limit_hits += 1
            err = RecursionLimitExceeded(
                f"Depth {opts.depth} reaches the limit of {self.config.max_depth}", depth=opts.depth
            )
            logger.warning(err.message)
            return self._failure(err, FAILURE_MESSAGES[err.kind], started, opts.depth, emit)

        if not self.store.active_agents():
            logger.info("No active agents; returning no-data response")
            result = PipelineResult(
                response=NO_DATA_RESPONSE,
                metadata=ResponseMetadata(depth=opts.depth, pipeline_time=time.perf_counter() - started),
            )
            if opts.depth == 0:
                async with self.session.memory_lock:
                    self.memory.record_turn(query, result.response)
            emit(EventType.COMPLETED, {"response_length": len(result.response), "no_data": True})
            return result

        agent_ids = self.store.active_ids()
        cacheable = opts.use_cache and not opts.context_slice
        if cacheable:
            cached = self.cache.get(query, agent_ids, opts.mode)
            if cached is not None:
                stats.cache_hits += 1
                if opts.depth == 0:
                    async with self.session.memory_lock:
                        self.memory.record_turn(query, cached.response, cached=True)
                emit(EventType.CACHE_HIT, {"query": query})
                emit(EventType.COMPLETED, {"response_length": len(cached.response), "cached": True})
                return cached

        plan = self._make_plan(query, query_id, opts)
        emit(EventType.PLAN_CREATED, {
            "strategy": plan.strategy.value,
            "sub_queries": plan.total_sub_queries,
            "classification": plan.classification.to_dict(),
        })

        memory_ctx, slices_used = await self._memory_context(query, plan, opts.depth)
        deepest = [opts.depth]

        async def handle_recursive(request: RecursiveCallRequest) -> RecursiveCallResponse:
            deepest[0] = max(deepest[0], request.depth)
            return await self._recursive_call(request, call_fn, emit)

        ctx = ExecutionContext(
            store=self.store,
            call_fn=call_fn,
            depth=opts.depth,
            memory=memory_ctx,
            program=opts.program,
            recursive_handler=handle_recursive,
            emit=emit,
            local_context={"sq-0": opts.context_slice} if opts.context_slice else {},
        )

        aggregation: Optional[AggregationResult] = None
        outcome = ExecutionOutcome()
        conflicts = ConflictReport()
        early_stop = False

        if not opts.context_slice and self.aggregator.should_early_stop(plan, self.store):
            try:
                aggregation = await self.aggregator.synthesize_from_slices(plan, self.store, call_fn, memory_ctx, opts.depth)
                early_stop = True
                stats.early_stops += 1
            except RLMError as e:
                logger.warning(f"Early stop failed ({e.kind.value}); running the full plan")

        if aggregation is None:
            outcome = await self.executor.execute(plan, ctx)
            stats.sub_queries_executed += len(outcome.results)
            stats.failed_sub_queries += len(outcome.failed)
            stats.prompt_fallbacks += outcome.prompt_fallbacks
            if outcome.timed_out:
                stats.plan_timeouts += 1

            failure = self._plan_failure(plan, outcome)
            if failure is not None:
                err, message = failure
                return self._failure(err, message, started, opts.depth, emit, plan=plan, outcome=outcome)

            conflicts = self.detector.analyze(outcome.siblings)
            if conflicts.pairs:
                emit(EventType.CONFLICTS_DETECTED, {
                    "conflicts": len(conflicts.conflicts),
                    "agreements": len(conflicts.agreements),
                    "themes": conflicts.themes,
                })

            emit(EventType.AGGREGATION_STARTED, {"results": len(outcome.successful)})
            aggregation = await self.aggregator.aggregate(
                query,
                self._answer_results(plan, outcome),
                call_fn,
                classification=plan.classification,
                conflicts=conflicts,
                reduce_result=outcome.reduce_result,
                memory=memory_ctx,
                allow_synthesis=not outcome.timed_out,
                depth=opts.depth,
            )

        response = self.aggregator.format_for_display(aggregation)
        input_tokens = sum(r.input_tokens for r in outcome.results) + aggregation.input_tokens
        output_tokens = sum(r.output_tokens for r in outcome.results) + aggregation.output_tokens
        stats.input_tokens += input_tokens
        stats.output_tokens += output_tokens

        metadata = ResponseMetadata(
            strategy=plan.strategy.value,
            classification=plan.classification.to_dict(),
            total_sub_queries=1 if early_stop else plan.total_sub_queries,
            successful_queries=1 if early_stop else len(outcome.successful),
            failed_queries=len(outcome.failed),
            sources=aggregation.sources,
            aggregation_type=aggregation.aggregation_type,
            conflicts=len(conflicts.conflicts),
            agreements=len(conflicts.agreements),
            conflict_summary=conflicts.summary,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            depth=opts.depth,
            early_stop=early_stop,
            timed_out=outcome.timed_out,
            prompt_fallbacks=outcome.prompt_fallbacks,
            memory_slices_used=slices_used,
            pipeline_time=time.perf_counter() - started,
        )
        result = PipelineResult(response=response, metadata=metadata)

        if opts.depth == 0:
            await self._remember(query, result, plan, outcome, deepest[0])
        if cacheable and not outcome.timed_out:
            self.cache.set(query, agent_ids, result, opts.mode)

        emit(EventType.COMPLETED, {
            "response_length": len(response),
            "strategy": metadata.strategy,
            "pipeline_time": round(metadata.pipeline_time, 3),
        })
        logger.info(
            f"Query {query_id} answered via {metadata.strategy} "
            f"({metadata.successful_queries}/{metadata.total_sub_queries} sub-queries, "
            f"{metadata.pipeline_time:.2f}s)"
        )
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _make_plan(self, query: str, query_id: str, opts: ProcessOptions) -> Plan:
        if opts.program is None and not opts.context_slice:
            return self.decomposer.decompose(query, self.store, query_id=query_id)

        classification = self.classifier.classify_safely(query, len(self.store.active_agents()))
        relevance = {s.agent.id: s.score for s in self.store.query_agents(query)}
        call = SubQuery(
            id="sq-0",
            kind=SubQueryKind.CODE if opts.program is not None else SubQueryKind.DIRECT,
            prompt=query,
            parent_id=query_id,
            target_agent_ids=[] if opts.context_slice else list(relevance),
            depth=opts.depth,
            context_level=ContextLevel(self.config.context_level),
        )
        variant = CodePlan if opts.program is not None else DirectPlan
        return variant(
            query_id=query_id,
            query=query,
            classification=classification,
            relevance=relevance,
            reason="sandboxed program" if opts.program is not None else "focused recursive call",
            call=call,
        )

    async def _memory_context(self, query: str, plan: Plan, depth: int) -> tuple[MemoryContext, int]:
        """Memory for answer-producing prompts; empty unless memory is live.

        Nested calls read memory without touching retrieval counters.
        """
        mode = self.memory.mode
        if mode == "off":
            return MemoryContext(), 0
        async with self.session.memory_lock:
            retrieval = self.memory.retrieve(query, agent_ids=plan.relevant_agent_ids, record=depth == 0)
        if mode != "live":
            logger.debug(f"Shadow retrieval: {len(retrieval.slices)} slices from {retrieval.candidate_count} candidates")
            return MemoryContext(), 0
        state = self.memory.state_block()
        window = self.memory.working_window
        return (
            MemoryContext(
                state_block=None if state.is_empty() else state,
                working_window=None if window.is_empty() else window,
                slices=retrieval.slices,
            ),
            len(retrieval.slices),
        )

    @staticmethod
    def _answer_results(plan: Plan, outcome: ExecutionOutcome) -> list[ExecutionResult]:
        """The results that answer the question, as opposed to debate and reduce steps."""
        if isinstance(plan, IterativePlan):
            follow_up = outcome.get(plan.follow_up.id)
            if follow_up is not None and follow_up.success:
                return [follow_up]
            initial = outcome.get(plan.initial.id)
            return [initial] if initial is not None else []
        return [r for r in outcome.results if r.kind not in (SubQueryKind.DEBATE, SubQueryKind.REDUCE)]

    def _plan_failure(self, plan: Plan, outcome: ExecutionOutcome) -> Optional[tuple[RLMError, str]]:
        if outcome.successful:
            return None
        if outcome.timed_out:
            return (
                PlanTimeout(f"No sub-query finished within {self.config.plan_timeout:.0f}s"),
                FAILURE_MESSAGES[ErrorKind.PLAN_TIMEOUT],
            )
        if isinstance(plan, (DirectPlan, CodePlan)) and outcome.failed:
            failed = outcome.failed[0]
            kind = failed.error_kind or ErrorKind.UPSTREAM_CALL_FAILED
            if kind == ErrorKind.RECURSION_LIMIT_EXCEEDED:
                # Skipped branch; aggregation reports the empty answer
                return None
            err = error_for_kind(kind, failed.error or "Model call failed", sub_query_id=failed.sub_query_id)
            return err, FAILURE_MESSAGES.get(kind, FAILURE_MESSAGES[ErrorKind.UPSTREAM_CALL_FAILED])
        return None

    def _failure(
        self,
        err: RLMError,
        message: str,
        started: float,
        depth: int,
        emit,
        plan: Optional[Plan] = None,
        outcome: Optional[ExecutionOutcome] = None,
    ) -> PipelineResult:
        self.session.stats.errors += 1
        if err.depth is None:
            err.depth = depth
        logger.warning(f"Query failed ({err.kind.value}): {err.message}")
        metadata = ResponseMetadata(
            strategy=plan.strategy.value if plan else None,
            classification=plan.classification.to_dict() if plan else None,
            total_sub_queries=plan.total_sub_queries if plan else 0,
            failed_queries=len(outcome.failed) if outcome else 0,
            depth=depth,
            timed_out=outcome.timed_out if outcome else False,
            pipeline_time=time.perf_counter() - started,
            error=err.to_detail(),
        )
        emit(EventType.FAILED, metadata.error)
        return PipelineResult(response=message, metadata=metadata, success=False)

    async def _remember(
        self,
        query: str,
        result: PipelineResult,
        plan: Plan,
        outcome: ExecutionOutcome,
        depth_reached: int,
    ) -> None:
        async with self.session.memory_lock:
            self.memory.record_turn(query, result.response, metadata={"strategy": result.metadata.strategy})
            self.memory.capture_turn(query, result.response, plan.relevant_agent_ids)
            self.memory.check_episode_triggers(
                projected_tokens=outcome.max_prompt_tokens,
                prompt_cap=self.prompt_builder.budget_for(self.config.tokens_per_sub_query),
                tool_calls=outcome.recursive_calls,
                depth=depth_reached,
            )

    # ------------------------------------------------------------------
    # Recursion
    # ------------------------------------------------------------------

    async def _recursive_call(self, request: RecursiveCallRequest, call_fn: CallFn, emit) -> RecursiveCallResponse:
        """Serve a sandboxed program's nested question with a fresh pipeline run one level down."""
        stats = self.session.stats
        stats.recursion_calls += 1
        emit(EventType.RECURSIVE_CALL, {"call_id": request.call_id, "depth": request.depth})
        async with self.session.memory_lock:
            self.memory.record_event("recursion", request.query, depth=request.depth)

        if request.depth >= self.config.max_depth:
            stats.recursion_limit_hits += 1
            err = RecursionLimitExceeded(
                f"Recursive call at depth {request.depth} reaches limit {self.config.max_depth}",
                depth=request.depth,
            )
            logger.warning(err.message)
            return RecursiveCallResponse(
                call_id=request.call_id,
                success=False,
                error=err.message,
                error_kind=err.kind.value,
            )

        result = await self.process(
            request.query,
            call_fn,
            ProcessOptions(depth=request.depth, context_slice=request.context_slice),
        )
        return RecursiveCallResponse(
            call_id=request.call_id,
            text=result.response,
            success=result.success,
            error=(result.metadata.error or {}).get("message"),
            error_kind=(result.metadata.error or {}).get("kind"),
        )
