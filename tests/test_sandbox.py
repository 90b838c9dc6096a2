"""Tests for sandboxed programs and the recursive call handshake."""

import asyncio

import pytest

from rlmkit.config.schema import SandboxConfig
from rlmkit.errors import ErrorKind, SubQueryTimeout, UpstreamCallFailed
from rlmkit.rlm.sandbox import (
    SKIPPED_TEXT,
    RecursiveCallResponse,
    SandboxAPI,
    SandboxRunner,
    SharedRegion,
)


async def echo_handler(request):
    return RecursiveCallResponse(call_id=request.call_id, text=f"answer to {request.query}")


@pytest.fixture
def runner():
    instance = SandboxRunner(SandboxConfig(sub_call_timeout=5), max_depth=3)
    yield instance
    instance.shutdown()


class TestSandboxAPI:
    """Test the program-side surface."""

    def test_call_reaching_ceiling_is_skipped_before_blocking(self):
        """A call that would reach max_depth is skipped without posting a request."""
        posted = []
        api = SandboxAPI(
            query="q", context=[], depth=2, max_depth=3,
            region=SharedRegion(notify=posted.append), blocking=True, timeout=60,
        )
        assert api.sub_lm("deeper") == SKIPPED_TEXT
        assert posted == []
        assert api.call_count == 0

    def test_try_sub_lm_returns_none_when_refused(self):
        """Test that a refused call gives None."""
        api = SandboxAPI(
            query="q", context=[], depth=2, max_depth=3,
            region=SharedRegion(notify=lambda _: None), blocking=True, timeout=60,
        )
        assert api.try_sub_lm("deeper") is None

    def test_non_blocking_returns_placeholder(self):
        """Test placeholder tokens."""
        api = SandboxAPI(
            query="q", context=[], depth=0, max_depth=3,
            region=SharedRegion(notify=lambda _: None), blocking=False, timeout=60,
            placeholder_prefix="PENDING",
        )
        token = api.sub_lm("inner")
        assert token == f"[[PENDING:{api.pending[0].call_id}]]"
        assert api.pending[0].depth == 1

    def test_region_ignores_responses_for_released_slots(self):
        """Test ignoring a response for a released slot."""
        region = SharedRegion(notify=lambda _: None)
        region.respond(RecursiveCallResponse(call_id="gone", text="late"))
        assert region.pending() == []


class TestSandboxRunner:
    """Test running programs and serving their nested calls."""

    @pytest.mark.asyncio
    async def test_blocking_handshake(self, runner):
        """Test the blocking handshake."""
        def program(api):
            return api.sub_lm("inner") + "!"

        outcome = await runner.run(program, query="q", context=[], depth=0, handler=echo_handler)

        assert outcome.output == "answer to inner!"
        assert outcome.recursive_calls == 1
        assert outcome.blocking is True
        assert outcome.placeholders_resolved == 0

    @pytest.mark.asyncio
    async def test_program_sees_query_and_context(self, runner):
        """Test what a program can read."""
        def program(api):
            names = ", ".join(a["displayName"] for a in api.context)
            api.final(f"{api.query}: {names}")

        outcome = await runner.run(
            program, query="Sources", context=[{"displayName": "Vendor Sync"}], depth=0, handler=echo_handler
        )
        assert outcome.output == "Sources: Vendor Sync"

    @pytest.mark.asyncio
    async def test_placeholder_fallback_when_blocking_disabled(self):
        """Test placeholder resolution."""
        runner = SandboxRunner(SandboxConfig(blocking="never"), max_depth=3)

        def program(api):
            return f"Result: {api.sub_lm('inner')}"

        outcome = await runner.run(program, query="q", context=[], depth=0, handler=echo_handler)
        runner.shutdown()

        assert outcome.output == "Result: answer to inner"
        assert outcome.blocking is False
        assert outcome.placeholders_resolved == 1

    @pytest.mark.asyncio
    async def test_inline_runner_uses_placeholders(self):
        """Test the inline runner."""
        runner = SandboxRunner(inline=True)
        assert runner.blocking is False

        outcome = await runner.run(
            lambda api: api.sub_lm("a") + " / " + api.sub_lm("b"),
            query="q", context=[], depth=0, handler=echo_handler,
        )
        runner.shutdown()
        assert outcome.output == "answer to a / answer to b"

    def test_inline_runner_cannot_require_blocking(self):
        """Test an inline runner that requires blocking."""
        with pytest.raises(ValueError):
            SandboxRunner(SandboxConfig(blocking="always"), inline=True)

    @pytest.mark.asyncio
    async def test_failed_placeholder_calls_are_marked(self):
        """Test placeholders for refused calls."""
        async def refuse(request):
            return RecursiveCallResponse(
                call_id=request.call_id,
                success=False,
                error="too deep",
                error_kind=ErrorKind.RECURSION_LIMIT_EXCEEDED.value,
            )

        runner = SandboxRunner(SandboxConfig(blocking="never"))
        outcome = await runner.run(lambda api: api.sub_lm("x"), query="q", context=[], depth=0, handler=refuse)
        runner.shutdown()
        assert outcome.output == "[skipped: recursion limit reached]"

    @pytest.mark.asyncio
    async def test_host_refusal_is_skipped_in_program(self, runner):
        """A refusal from the host is a skip: sub_lm gives the skip text, try_sub_lm gives None."""
        async def refuse(request):
            return RecursiveCallResponse(
                call_id=request.call_id,
                success=False,
                error="too deep",
                error_kind=ErrorKind.RECURSION_LIMIT_EXCEEDED.value,
            )

        def program(api):
            fallback = api.try_sub_lm("x") or "none"
            return f"Partial. {api.sub_lm('y')} {fallback}"

        outcome = await runner.run(program, query="q", context=[], depth=0, handler=refuse)
        assert outcome.output == f"Partial. {SKIPPED_TEXT} none"
        assert outcome.recursive_calls == 2

    @pytest.mark.asyncio
    async def test_program_exception_becomes_upstream_failure(self, runner):
        """Test that a raising program is an upstream failure."""
        def program(api):
            raise KeyError("missing")

        with pytest.raises(UpstreamCallFailed):
            await runner.run(program, query="q", context=[], depth=0, handler=echo_handler)

    @pytest.mark.asyncio
    async def test_unanswered_call_times_out(self):
        """Test the sub-call timeout."""
        async def slow(request):
            await asyncio.sleep(5)
            return RecursiveCallResponse(call_id=request.call_id, text="late")

        runner = SandboxRunner(SandboxConfig(sub_call_timeout=0.1))
        with pytest.raises(SubQueryTimeout):
            await asyncio.wait_for(
                runner.run(lambda api: api.sub_lm("x"), query="q", context=[], depth=0, handler=slow),
                timeout=5,
            )
        runner.shutdown()

    @pytest.mark.asyncio
    async def test_recursion_limit_never_hangs(self, runner):
        """A program at the ceiling keeps its own output and never waits on the host."""
        def program(api):
            return "Partial analysis. " + api.sub_lm("deeper")

        outcome = await asyncio.wait_for(
            runner.run(program, query="q", context=[], depth=2, handler=echo_handler),
            timeout=5,
        )
        assert outcome.output == f"Partial analysis. {SKIPPED_TEXT}"
        assert outcome.recursive_calls == 0
