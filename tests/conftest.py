"""Shared fixtures: a scripted model call function and sample meeting agents."""

import asyncio
import copy

import pytest

from rlmkit.config.schema import RLMConfig
from rlmkit.context.models import Agent
from rlmkit.context.store import ContextStore
from rlmkit.providers.base import LLMResponse
from rlmkit.rlm.pipeline import Pipeline

MEETINGS = [
    {
        "id": "m1",
        "displayName": "Q3 Planning",
        "date": "2024-07-01",
        "summary": "Planned the Q3 roadmap and set budget priorities for the quarter.",
        "keyPoints": ["Roadmap approved for Q3", "Budget capped at 50k"],
        "actionItems": ["Alice drafts the detailed roadmap"],
        "sentiment": "Positive",
    },
    {
        "id": "m2",
        "displayName": "Design Review",
        "date": "2024-07-08",
        "summary": "Reviewed the onboarding flow and decided to simplify signup.",
        "keyPoints": ["Signup reduced to two steps"],
        "actionItems": ["Bob updates the mockups"],
    },
    {
        "id": "m3",
        "displayName": "Vendor Sync",
        "date": "2024-07-15",
        "summary": "Vendor delays put the launch date at risk.",
        "keyPoints": ["Shipment slipped two weeks"],
        "actionItems": ["Carol escalates with the vendor"],
    },
    {
        "id": "m4",
        "displayName": "Hiring Update",
        "date": "2024-07-22",
        "summary": "Two engineers joined; one designer role is still open.",
        "keyPoints": ["Designer search continues"],
        "actionItems": ["Dana schedules interviews"],
    },
    {
        "id": "m5",
        "displayName": "Launch Retro",
        "date": "2024-07-29",
        "summary": "Retrospective on the beta launch; the team decided to add a staging step.",
        "keyPoints": ["Staging step added before release"],
        "actionItems": ["Evan writes the staging checklist"],
    },
]

MEETING_NAMES = [m["displayName"] for m in MEETINGS]


def default_answer(context: dict) -> str:
    return f"{context.get('sub_query_id', 'call')} answer"


class FakeLLM:
    """Scripted stand-in for the model call boundary.

    ``responder(system_prompt, user_content, context)`` returns the answer
    text and may raise to simulate a failure. ``fail_times`` makes the
    first N calls raise ``error``.
    """

    def __init__(self, responder=None, delay: float = 0.0, fail_times: int = 0, error: Exception | None = None):
        self.responder = responder
        self.delay = delay
        self.fail_times = fail_times
        self.error = error or RuntimeError("upstream unavailable")
        self.calls: list[dict] = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, system_prompt: str, user_content: str, context: dict) -> LLMResponse:
        self.calls.append({"system": system_prompt, "user": user_content, "context": dict(context)})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_times:
                self.fail_times -= 1
                raise self.error
            if self.responder is not None:
                text = self.responder(system_prompt, user_content, context)
            else:
                text = default_answer(context)
        finally:
            self.active -= 1
        return LLMResponse(content=text, usage={"prompt_tokens": 100, "completion_tokens": 20})

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def calls_for(self, sub_query_id: str) -> list[dict]:
        return [c for c in self.calls if c["context"].get("sub_query_id") == sub_query_id]

    def sub_query_ids(self) -> list[str]:
        return [c["context"].get("sub_query_id") for c in self.calls]


@pytest.fixture
def meetings():
    return copy.deepcopy(MEETINGS)


@pytest.fixture
def store(meetings):
    context_store = ContextStore()
    context_store.load([Agent.from_dict(m) for m in meetings])
    return context_store


@pytest.fixture
def config():
    return RLMConfig(retry_delay=0.0, retry_jitter=0.0)


@pytest.fixture
def pipeline(config, meetings):
    instance = Pipeline(config)
    instance.load_agents(meetings)
    return instance


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def make_llm():
    """Factory for scripted call functions: ``make_llm(responder=..., delay=...)``."""
    return FakeLLM


@pytest.fixture
def meeting_names():
    return list(MEETING_NAMES)
