"""Sub-Query Execution - run a plan's sub-queries under concurrency and time limits.

Sub-queries of one phase run on a bounded worker pool (``max_concurrent``
workers pulling from a shared queue). Phases run in dependency order:
map (or group) sub-queries, then the debate step, then the reduce step,
which sees the map answers and the debate's tensions as its local
context. Iterative plans run the follow-up only when the first answer
sounds unsure.

A plan-level deadline bounds the whole run. Once it passes no new
sub-query starts; calls already in flight may finish in the background
but their results are ignored.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from loguru import logger

from rlmkit.config.schema import RLMConfig
from rlmkit.context.store import ContextStore
from rlmkit.errors import RLMError, SubQueryTimeout, UpstreamCallFailed
from rlmkit.memory.models import ScoredSlice, StateBlock, WorkingWindow
from rlmkit.prompt.builder import BuiltPrompt, PromptBuilder
from rlmkit.rlm.calls import CallFn, RetryPolicy, invoke
from rlmkit.rlm.events import EventType
from rlmkit.rlm.models import (
    CodePlan,
    DirectPlan,
    ExecutionResult,
    GroupPlan,
    IterativePlan,
    MapDebateReducePlan,
    MapReducePlan,
    ParallelPlan,
    Plan,
    SIBLING_KINDS,
    SubQuery,
    SubQueryKind,
)
from rlmkit.rlm.perspectives import DEBATE_PAIRS, get_role
from rlmkit.rlm.sandbox import (
    RecursiveCallRequest,
    RecursiveCallResponse,
    RecursiveHandler,
    SandboxProgram,
    SandboxRunner,
)

UNCERTAINTY_MARKERS = (
    "not sure",
    "unclear",
    "might be",
    "could be",
    "no information",
    "not found",
    "limited data",
)

RESULT_SEPARATOR = "\n\n---\n\n"

# Kinds whose prompts carry conversation memory; the rest see only their sources
MEMORY_KINDS = (
    SubQueryKind.DIRECT,
    SubQueryKind.INITIAL,
    SubQueryKind.FOLLOW_UP,
    SubQueryKind.REDUCE,
    SubQueryKind.CODE,
)

EmitFn = Callable[[EventType, dict[str, Any]], None]


def needs_follow_up(response: str) -> bool:
    lowered = response.lower()
    return any(marker in lowered for marker in UNCERTAINTY_MARKERS)


@dataclass
class MemoryContext:
    """Conversation memory offered to answer-producing prompts."""
    state_block: Optional[StateBlock] = None
    working_window: Optional[WorkingWindow] = None
    slices: list[ScoredSlice] = field(default_factory=list)


@dataclass
class ExecutionContext:
    """Everything a plan run needs besides the plan itself."""
    store: ContextStore
    call_fn: CallFn
    depth: int = 0
    memory: MemoryContext = field(default_factory=MemoryContext)
    program: Optional[SandboxProgram] = None
    recursive_handler: Optional[RecursiveHandler] = None
    emit: EmitFn = lambda event_type, data: None
    local_context: dict[str, str] = field(default_factory=dict)  # Sub-query id -> text replacing agent context


@dataclass
class ExecutionOutcome:
    results: list[ExecutionResult] = field(default_factory=list)
    timed_out: bool = False
    not_started: list[str] = field(default_factory=list)
    follow_up_ran: bool = False
    recursive_calls: int = 0
    max_prompt_tokens: int = 0
    deadline: float = 0.0

    def get(self, sub_query_id: str) -> Optional[ExecutionResult]:
        for result in self.results:
            if result.sub_query_id == sub_query_id:
                return result
        return None

    @property
    def successful(self) -> list[ExecutionResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> list[ExecutionResult]:
        return [r for r in self.results if not r.success]

    @property
    def siblings(self) -> list[ExecutionResult]:
        """Results that answer the question from different sources."""
        return [r for r in self.results if r.kind in SIBLING_KINDS]

    @property
    def reduce_result(self) -> Optional[ExecutionResult]:
        for result in self.results:
            if result.kind == SubQueryKind.REDUCE:
                return result
        return None

    @property
    def prompt_fallbacks(self) -> int:
        return sum(1 for r in self.results if r.prompt_fallback)


async def _refuse_recursion(request: RecursiveCallRequest) -> RecursiveCallResponse:
    return RecursiveCallResponse(
        call_id=request.call_id,
        success=False,
        error="Recursive calls are not available here",
    )


class SubExecutor:
    """Executes plans produced by ``QueryDecomposer``."""

    def __init__(
        self,
        config: Optional[RLMConfig] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        sandbox: Optional[SandboxRunner] = None,
    ):
        self.config = config or RLMConfig()
        self.prompt_builder = prompt_builder or PromptBuilder(self.config.prompt)
        self.sandbox = sandbox or SandboxRunner(self.config.sandbox, max_depth=self.config.max_depth)
        self.retry = RetryPolicy.from_config(self.config)
        self._detached: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def execute(self, plan: Plan, ctx: ExecutionContext) -> ExecutionOutcome:
        loop = asyncio.get_running_loop()
        run = ExecutionOutcome(deadline=loop.time() + self.config.plan_timeout)
        logger.info(f"Executing {plan.strategy.value} plan with {plan.total_sub_queries} sub-queries at depth {ctx.depth}")

        if isinstance(plan, (DirectPlan, CodePlan)):
            await self._run_batch([plan.call], ctx, run)
        elif isinstance(plan, ParallelPlan):
            await self._run_batch(plan.calls, ctx, run)
        elif isinstance(plan, MapReducePlan):
            await self._gather_then_reduce(plan.maps, None, plan.reduce, ctx, run)
        elif isinstance(plan, MapDebateReducePlan):
            await self._gather_then_reduce(plan.maps, plan.debate, plan.reduce, ctx, run)
        elif isinstance(plan, GroupPlan):
            if plan.reduce is None:
                await self._run_batch(plan.groups, ctx, run)
            else:
                await self._gather_then_reduce(plan.groups, plan.debate, plan.reduce, ctx, run)
        elif isinstance(plan, IterativePlan):
            await self._iterative(plan, ctx, run)
        else:
            raise TypeError(f"Unknown plan type: {type(plan).__name__}")

        if run.timed_out:
            logger.warning(
                f"Plan deadline of {self.config.plan_timeout:.0f}s passed: "
                f"{len(run.results)} results kept, {len(run.not_started)} sub-queries not started"
            )
        logger.info(f"Execution finished: {len(run.successful)} succeeded, {len(run.failed)} failed")
        return run

    async def _gather_then_reduce(
        self,
        gather: list[SubQuery],
        debate: Optional[SubQuery],
        reduce: SubQuery,
        ctx: ExecutionContext,
        run: ExecutionOutcome,
    ) -> None:
        ctx.emit(EventType.PHASE_STARTED, {"phase": "map", "count": len(gather)})
        gathered = [r for r in await self._run_batch(gather, ctx, run) if r.success]
        if not gathered:
            logger.warning("No map results succeeded; skipping reduce")
            run.not_started.extend(sq.id for sq in (debate, reduce) if sq is not None)
            return

        sections = [self.format_results(gathered)]
        if debate is not None:
            perspectives = {r.perspective for r in gathered if r.perspective}
            if len(perspectives) >= min(self.config.debate_min_perspectives, len(gathered)) and len(gathered) > 1:
                ctx.emit(EventType.PHASE_STARTED, {"phase": "debate", "count": 1})
                debated = await self._run_batch(
                    [debate], ctx, run,
                    timeout=self.config.reduce_timeout,
                    local_context={debate.id: self.debate_context(gathered)},
                )
                if debated and debated[0].success:
                    sections.append(f"KEY TENSIONS\n{debated[0].response}")
            else:
                logger.debug(f"Debate skipped: {len(perspectives)} distinct perspectives")
                run.not_started.append(debate.id)

        ctx.emit(EventType.PHASE_STARTED, {"phase": "reduce", "count": 1})
        await self._run_batch(
            [reduce], ctx, run,
            timeout=self.config.reduce_timeout,
            local_context={reduce.id: RESULT_SEPARATOR.join(sections)},
        )

    async def _iterative(self, plan: IterativePlan, ctx: ExecutionContext, run: ExecutionOutcome) -> None:
        initial = await self._run_batch([plan.initial], ctx, run)
        first = initial[0] if initial else None
        if first is not None and first.success and not needs_follow_up(first.response):
            logger.debug("Initial answer is confident; follow-up not needed")
            run.not_started.append(plan.follow_up.id)
            return

        local = self.agent_context(plan.follow_up, ctx)
        if first is not None and first.success:
            local = f"Previous answer:\n{first.response}{RESULT_SEPARATOR}{local}"
        run.follow_up_ran = True
        await self._run_batch([plan.follow_up], ctx, run, local_context={plan.follow_up.id: local})

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    async def _run_batch(
        self,
        batch: list[SubQuery],
        ctx: ExecutionContext,
        run: ExecutionOutcome,
        timeout: Optional[float] = None,
        local_context: Optional[dict[str, str]] = None,
    ) -> list[ExecutionResult]:
        """Run ``batch`` on at most ``max_concurrent`` workers, in queue order.

        Returns the results that arrived before the plan deadline, in
        ``batch`` order.
        """
        if not batch:
            return []
        loop = asyncio.get_running_loop()
        queue = list(batch)
        results: dict[str, ExecutionResult] = {}
        local_context = {**ctx.local_context, **(local_context or {})}

        async def worker() -> None:
            while queue:
                if loop.time() >= run.deadline:
                    return
                sub_query = queue.pop(0)
                result = await self._run_one(sub_query, ctx, run, timeout, local_context.get(sub_query.id))
                if loop.time() < run.deadline:
                    results[sub_query.id] = result
                else:
                    logger.debug(f"Ignoring {sub_query.id}: finished after the plan deadline")

        workers = [asyncio.create_task(worker()) for _ in range(min(self.config.max_concurrent, len(batch)))]
        done, running = await asyncio.wait(workers, timeout=max(0.0, run.deadline - loop.time()))
        for task in done:
            task.result()
        for task in running:
            self._detach(task)

        # Workers still running means the wait hit the deadline
        if running or (loop.time() >= run.deadline and (queue or len(results) < len(batch))):
            run.timed_out = True
        run.not_started.extend(sq.id for sq in queue)
        queue.clear()

        ordered = [results[sq.id] for sq in batch if sq.id in results]
        run.results.extend(ordered)
        return ordered

    def _detach(self, task: asyncio.Task) -> None:
        """Let an in-flight worker finish on its own."""
        self._detached.add(task)
        task.add_done_callback(self._detached_done)

    def _detached_done(self, task: asyncio.Task) -> None:
        self._detached.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Late sub-query worker failed: {task.exception()}")

    # ------------------------------------------------------------------
    # Single sub-query
    # ------------------------------------------------------------------

    async def _run_one(
        self,
        sub_query: SubQuery,
        ctx: ExecutionContext,
        run: ExecutionOutcome,
        timeout: Optional[float],
        local_context: Optional[str],
    ) -> ExecutionResult:
        names = [
            agent.display_name
            for agent in (ctx.store.get(a) for a in sub_query.target_agent_ids)
            if agent is not None
        ]
        result = ExecutionResult(
            sub_query_id=sub_query.id,
            kind=sub_query.kind,
            source_agent_ids=list(sub_query.target_agent_ids),
            source_names=names,
            perspective=sub_query.perspective,
        )
        ctx.emit(EventType.SUB_QUERY_STARTED, {"sub_query_id": sub_query.id, "kind": sub_query.kind.value})
        logger.debug(f"Sub-query {sub_query.id} started ({sub_query.kind.value}, {len(names)} sources)")
        started = time.perf_counter()

        try:
            if sub_query.kind == SubQueryKind.CODE:
                result.response = await self._run_program(sub_query, ctx, run)
            else:
                built = self.build_prompt(sub_query, ctx, local_context)
                result.prompt_fallback = built.fallback
                run.max_prompt_tokens = max(run.max_prompt_tokens, built.token_estimate)
                outcome = await invoke(
                    ctx.call_fn,
                    built.system_prompt,
                    built.user_content,
                    {
                        "sub_query_id": sub_query.id,
                        "kind": sub_query.kind.value,
                        "depth": ctx.depth,
                        "agent_ids": list(sub_query.target_agent_ids),
                        "perspective": sub_query.perspective,
                        "max_tokens": self.prompt_builder.config.response_reserve,
                    },
                    timeout=timeout or self.config.call_timeout,
                    policy=self.retry,
                )
                result.response = outcome.text
                result.input_tokens = outcome.input_tokens
                result.output_tokens = outcome.output_tokens
                result.attempts = outcome.attempts
        except RLMError as e:
            result.success = False
            result.error_kind = e.kind
            result.error = e.message
            logger.warning(f"Sub-query {sub_query.id} failed ({e.kind.value}): {e.message}")

        result.latency = time.perf_counter() - started
        ctx.emit(EventType.SUB_QUERY_FINISHED, {
            "sub_query_id": sub_query.id,
            "success": result.success,
            "latency": round(result.latency, 3),
        })
        logger.debug(f"Sub-query {sub_query.id} finished in {result.latency:.2f}s (success={result.success})")
        return result

    async def _run_program(self, sub_query: SubQuery, ctx: ExecutionContext, run: ExecutionOutcome) -> str:
        if ctx.program is None:
            raise UpstreamCallFailed("No program supplied for code execution", sub_query_id=sub_query.id)
        loop = asyncio.get_running_loop()
        try:
            outcome = await asyncio.wait_for(
                self.sandbox.run(
                    ctx.program,
                    query=sub_query.prompt,
                    context=ctx.store.agent_records(),
                    depth=ctx.depth,
                    handler=ctx.recursive_handler or _refuse_recursion,
                ),
                timeout=max(0.0, run.deadline - loop.time()),
            )
        except asyncio.TimeoutError:
            raise SubQueryTimeout("Sandboxed program did not finish before the plan deadline",
                                  depth=ctx.depth, sub_query_id=sub_query.id) from None
        run.recursive_calls += outcome.recursive_calls
        if not outcome.output.strip():
            raise UpstreamCallFailed("Sandboxed program produced no answer", sub_query_id=sub_query.id)
        return outcome.output

    # ------------------------------------------------------------------
    # Prompt material
    # ------------------------------------------------------------------

    def agent_context(self, sub_query: SubQuery, ctx: ExecutionContext) -> str:
        if not sub_query.target_agent_ids:
            return ""
        budget = min(
            self.prompt_builder.config.local_context_tokens,
            self.prompt_builder.budget_for(self.config.tokens_per_sub_query),
        )
        text, level = ctx.store.combined_context_with_budget(sub_query.target_agent_ids, budget, sub_query.context_level)
        if level != sub_query.context_level:
            logger.debug(f"Sub-query {sub_query.id} context reduced to {level.value}")
        return text

    def build_prompt(self, sub_query: SubQuery, ctx: ExecutionContext, local_context: Optional[str] = None) -> BuiltPrompt:
        if local_context is None:
            local_context = self.agent_context(sub_query, ctx)
        memory = ctx.memory if sub_query.kind in MEMORY_KINDS else MemoryContext()
        return self.prompt_builder.build(
            task=sub_query.prompt,
            state_block=memory.state_block,
            working_window=memory.working_window,
            slices=memory.slices,
            local_context=local_context,
            max_tokens=self.config.tokens_per_sub_query,
        )

    @staticmethod
    def format_results(results: list[ExecutionResult]) -> str:
        """Sub-answers with source attribution, for reduce and synthesis prompts."""
        blocks = []
        for result in results:
            source = ", ".join(result.source_names) or result.sub_query_id
            role = get_role(result.perspective)
            header = f"[{source}]" + (f" ({role.label})" if role else "")
            blocks.append(f"{header}\n{result.response.strip()}")
        return RESULT_SEPARATOR.join(blocks)

    @staticmethod
    def debate_context(results: list[ExecutionResult]) -> str:
        """Perspective answers, with the opposing pairs to weigh called out."""
        by_role: dict[str, ExecutionResult] = {}
        for result in results:
            if result.perspective and result.perspective not in by_role:
                by_role[result.perspective] = result

        text = SubExecutor.format_results(results)
        pairs = [
            f"{get_role(a).label} vs {get_role(b).label}"
            for a, b in DEBATE_PAIRS
            if a in by_role and b in by_role
        ]
        if pairs:
            text += f"\n\nOpposing perspectives to weigh: {'; '.join(pairs)}"
        return text
