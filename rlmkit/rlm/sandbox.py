"""Sandboxed programs and the recursive sub-LM call protocol.

A program is a plain callable that receives a ``SandboxAPI``. It runs on
a worker thread, so it may block. When it calls ``api.sub_lm(...)`` the
request is written into a slot of a ``SharedRegion`` and the host's
event loop is woken. The worker then waits on the slot until the host
has run the nested query and written the response back.

When the program cannot block (``blocking="never"``, or a runner created
with ``inline=True`` that runs programs on the loop thread), ``sub_lm``
returns a placeholder token instead. The runner resolves all pending
calls after the program finishes and substitutes their answers into its
output.

Depth is checked on both sides of the handshake: the sandbox refuses a
call that would reach ``max_depth`` before it blocks, and the host
refuses any request at or over the ceiling. A refused call is skipped,
not failed: ``sub_lm`` returns ``SKIPPED_TEXT`` and the program carries on.
"""

import asyncio
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from rlmkit.config.schema import SandboxConfig
from rlmkit.errors import (
    ErrorKind,
    RecursionLimitExceeded,
    RLMError,
    SubQueryTimeout,
    UpstreamCallFailed,
)

SKIPPED_TEXT = "[skipped: recursion limit reached]"


@dataclass
class RecursiveCallRequest:
    call_id: str
    query: str
    context_slice: str = ""
    depth: int = 1


@dataclass
class RecursiveCallResponse:
    call_id: str
    text: str = ""
    success: bool = True
    error: Optional[str] = None
    error_kind: Optional[str] = None


RecursiveHandler = Callable[[RecursiveCallRequest], Awaitable[RecursiveCallResponse]]


@dataclass
class _Slot:
    request: RecursiveCallRequest
    ready: threading.Event = field(default_factory=threading.Event)
    response: Optional[RecursiveCallResponse] = None


class SharedRegion:
    """Request/response slots shared between a sandbox thread and the host loop."""

    def __init__(self, notify: Callable[[str], None]):
        self._notify = notify
        self._lock = threading.Lock()
        self._slots: dict[str, _Slot] = {}

    def post(self, request: RecursiveCallRequest) -> _Slot:
        slot = _Slot(request=request)
        with self._lock:
            self._slots[request.call_id] = slot
        self._notify(request.call_id)
        return slot

    def request(self, call_id: str) -> Optional[RecursiveCallRequest]:
        with self._lock:
            slot = self._slots.get(call_id)
        return slot.request if slot else None

    def respond(self, response: RecursiveCallResponse) -> None:
        with self._lock:
            slot = self._slots.get(response.call_id)
        if slot is None:
            # Sandbox gave up waiting
            return
        slot.response = response
        slot.ready.set()

    def release(self, call_id: str) -> None:
        with self._lock:
            self._slots.pop(call_id, None)

    def pending(self) -> list[str]:
        with self._lock:
            return [cid for cid, slot in self._slots.items() if not slot.ready.is_set()]


class SandboxAPI:
    """The surface a sandboxed program sees.

    ``context`` is a list of plain agent dicts; ``query`` is the question
    the program is answering. Programs return their answer or pass it to
    ``final()``.
    """

    def __init__(
        self,
        query: str,
        context: list[dict[str, Any]],
        depth: int,
        max_depth: int,
        region: SharedRegion,
        blocking: bool,
        timeout: float,
        placeholder_prefix: str = "SUB_LM_PENDING",
    ):
        self.query = query
        self.context = context
        self.depth = depth
        self.max_depth = max_depth
        self.answer: Optional[str] = None
        self.call_count = 0
        self.pending: list[RecursiveCallRequest] = []
        self._region = region
        self._blocking = blocking
        self._timeout = timeout
        self._placeholder_prefix = placeholder_prefix

    @property
    def blocking(self) -> bool:
        return self._blocking

    def placeholder(self, call_id: str) -> str:
        return f"[[{self._placeholder_prefix}:{call_id}]]"

    def sub_lm(self, query: str, context_slice: str = "") -> str:
        """Ask a nested question; returns the answer text.

        A call refused at the depth ceiling returns ``SKIPPED_TEXT``.

        Raises:
            SubQueryTimeout: the host did not answer in time.
            UpstreamCallFailed: the nested query failed.
        """
        try:
            return self._call(query, context_slice)
        except RecursionLimitExceeded as e:
            logger.warning(f"Recursive call skipped: {e.message}")
            return SKIPPED_TEXT

    def try_sub_lm(self, query: str, context_slice: str = "") -> Optional[str]:
        """Like ``sub_lm`` but returns ``None`` when the call is refused or fails."""
        try:
            return self._call(query, context_slice)
        except RLMError as e:
            logger.debug(f"Recursive call skipped: {e.message}")
            return None

    def _call(self, query: str, context_slice: str) -> str:
        next_depth = self.depth + 1
        if next_depth >= self.max_depth:
            raise RecursionLimitExceeded(
                f"Recursive call at depth {next_depth} reaches limit {self.max_depth}",
                depth=next_depth,
            )

        self.call_count += 1
        request = RecursiveCallRequest(
            call_id=uuid.uuid4().hex[:12],
            query=query,
            context_slice=context_slice,
            depth=next_depth,
        )

        if not self._blocking:
            self.pending.append(request)
            return self.placeholder(request.call_id)

        slot = self._region.post(request)
        try:
            if not slot.ready.wait(self._timeout):
                raise SubQueryTimeout(
                    f"Recursive call not answered within {self._timeout:.0f}s",
                    depth=next_depth,
                    sub_query_id=request.call_id,
                )
        finally:
            self._region.release(request.call_id)

        response = slot.response
        if response.error_kind == ErrorKind.RECURSION_LIMIT_EXCEEDED.value:
            raise RecursionLimitExceeded(response.error or "Recursion limit reached", depth=next_depth)
        if not response.success:
            raise UpstreamCallFailed(response.error or "Recursive call failed", depth=next_depth)
        return response.text

    def final(self, answer: str) -> None:
        self.answer = answer


SandboxProgram = Callable[[SandboxAPI], Optional[str]]


@dataclass
class SandboxOutcome:
    output: str
    recursive_calls: int = 0
    placeholders_resolved: int = 0
    blocking: bool = True


class SandboxRunner:
    """Runs sandboxed programs and serves their recursive calls."""

    def __init__(self, config: Optional[SandboxConfig] = None, max_depth: int = 3, inline: bool = False):
        self.config = config or SandboxConfig()
        self.max_depth = max_depth
        self.inline = inline
        if inline and self.config.blocking == "always":
            raise ValueError("blocking='always' needs programs to run off the event loop thread")
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="rlm-sandbox")

    @property
    def blocking(self) -> bool:
        if self.config.blocking == "never":
            return False
        return not self.inline

    async def run(
        self,
        program: SandboxProgram,
        query: str,
        context: list[dict[str, Any]],
        depth: int,
        handler: RecursiveHandler,
    ) -> SandboxOutcome:
        """Execute ``program`` and return its answer.

        Raises:
            RLMError: the program let a pipeline error escape.
            UpstreamCallFailed: the program raised anything else.
        """
        loop = asyncio.get_running_loop()
        requests: asyncio.Queue[str] = asyncio.Queue()
        region = SharedRegion(notify=lambda call_id: loop.call_soon_threadsafe(requests.put_nowait, call_id))
        api = SandboxAPI(
            query=query,
            context=context,
            depth=depth,
            max_depth=self.max_depth,
            region=region,
            blocking=self.blocking,
            timeout=self.config.sub_call_timeout,
            placeholder_prefix=self.config.placeholder_prefix,
        )

        serving: set[asyncio.Task] = set()

        async def serve() -> None:
            while True:
                call_id = await requests.get()
                request = region.request(call_id)
                if request is None:
                    continue
                task = asyncio.create_task(self._answer(request, handler, region.respond))
                serving.add(task)
                task.add_done_callback(serving.discard)

        server = asyncio.create_task(serve())
        try:
            if self.inline:
                output = self._invoke(program, api)
            else:
                output = await loop.run_in_executor(self._executor, self._invoke, program, api)
        finally:
            server.cancel()
            for task in list(serving):
                task.cancel()
            await asyncio.gather(server, *serving, return_exceptions=True)

        resolved = 0
        if api.pending:
            output, resolved = await self._resolve_placeholders(output, api, handler)

        logger.debug(f"Sandbox finished at depth {depth}: {api.call_count} recursive calls")
        return SandboxOutcome(
            output=output,
            recursive_calls=api.call_count,
            placeholders_resolved=resolved,
            blocking=api.blocking,
        )

    @staticmethod
    def _invoke(program: SandboxProgram, api: SandboxAPI) -> str:
        try:
            returned = program(api)
        except RLMError:
            raise
        except Exception as e:
            raise UpstreamCallFailed(f"Sandboxed program failed: {e}", depth=api.depth) from e
        answer = api.answer if api.answer is not None else returned
        return "" if answer is None else str(answer)

    @staticmethod
    async def _answer(
        request: RecursiveCallRequest,
        handler: RecursiveHandler,
        respond: Callable[[RecursiveCallResponse], None],
    ) -> RecursiveCallResponse:
        try:
            response = await handler(request)
        except RLMError as e:
            response = RecursiveCallResponse(
                call_id=request.call_id,
                success=False,
                error=e.message,
                error_kind=e.kind.value,
            )
        respond(response)
        return response

    async def _resolve_placeholders(
        self,
        output: str,
        api: SandboxAPI,
        handler: RecursiveHandler,
    ) -> tuple[str, int]:
        """Answer deferred calls and substitute them into ``output``."""
        logger.info(f"Resolving {len(api.pending)} deferred recursive calls")
        responses = await asyncio.gather(
            *(self._answer(request, handler, lambda _: None) for request in api.pending)
        )
        for response in responses:
            if response.success:
                text = response.text
            elif response.error_kind == ErrorKind.RECURSION_LIMIT_EXCEEDED.value:
                text = SKIPPED_TEXT
            else:
                text = f"[sub-query failed: {response.error}]"
            output = output.replace(api.placeholder(response.call_id), text)
        return output, len(responses)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
