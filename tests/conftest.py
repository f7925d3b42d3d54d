"""
Shared fakes for the orchestrator, transport and storage collaborators.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from realtime_interview.agents.interviewer import Interviewer
from realtime_interview.agents.turn_controller import TurnContext, TurnControllerBase
from realtime_interview.cache import InMemoryCacheBackend, SessionCache, initialize_session_cache
from realtime_interview.config import Settings
from realtime_interview.models.llm_client import LLMError, Message
from realtime_interview.orchestrator.schemas import (
    ControllerDecision,
    EvaluationDecision,
    InterviewTemplate,
    TemplateQuestion,
    TranscriptMessage,
)


class RecordingTransport:
    """Collects every emitted `(event, payload)` pair."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    async def emit(self, event: str, payload: Any = None) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def payloads(self, event: str) -> list[Any]:
        return [payload for name, payload in self.events if name == event]

    def clear(self) -> None:
        self.events.clear()


class FakeTemplateStore:
    def __init__(self, *templates: InterviewTemplate) -> None:
        self.templates = {t.id: t for t in templates}

    async def get_template(self, template_id: str) -> InterviewTemplate | None:
        return self.templates.get(template_id)


class ScriptedController(TurnControllerBase):
    """Returns queued decisions in order, then the fallback."""

    def __init__(self, *decisions: ControllerDecision) -> None:
        self.decisions = list(decisions)
        self.contexts: list[TurnContext] = []

    async def decide(self, context: TurnContext, *, session_token: str = "") -> ControllerDecision:
        self.contexts.append(context)
        if self.decisions:
            return self.decisions.pop(0)
        return ControllerDecision.fallback()


class FakeLLM:
    """Stands in for `LLMClient.stream_chat` with canned chunks."""

    def __init__(
        self, chunks: list[str] | None = None, fail: bool = False, error: Exception | None = None
    ) -> None:
        self.chunks = chunks if chunks is not None else ["Could you ", "say more?"]
        self.fail = fail
        self.error = error
        self.calls: list[list[Message]] = []

    async def stream_chat(self, messages: list[Message], **kwargs: Any) -> AsyncIterator[str]:
        self.calls.append(messages)
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error
        if self.fail:
            raise LLMError("stream broke")


class RecordingDecisionSink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.decisions: list[EvaluationDecision] = []

    async def record_decision(self, decision: EvaluationDecision) -> None:
        if self.fail:
            raise RuntimeError("audit store down")
        self.decisions.append(decision)


class RecordingTranscriptSink:
    def __init__(self) -> None:
        self.messages: list[TranscriptMessage] = []
        self.additions: list[tuple[str, str | None, str]] = []

    async def record_message(self, message: TranscriptMessage) -> None:
        self.messages.append(message)

    async def append_to_last_candidate_message(
        self, session_id: str, question_id: str | None, addition: str
    ) -> bool:
        self.additions.append((session_id, question_id, addition))
        for message in reversed(self.messages):
            if message.role.value == "candidate" and message.question_id == question_id:
                message.content = f"{message.content} {addition}"
                return True
        return False


def make_template(**overrides: Any) -> InterviewTemplate:
    values: dict[str, Any] = {
        "id": "tpl-1",
        "name": "Backend Engineer",
        "persona_prompt": "A friendly engineering manager.",
        "questions": [
            TemplateQuestion(id="q1", question_text="Tell me about yourself.", order_index=0, max_followups=2),
            TemplateQuestion(id="q2", question_text="Describe a hard bug you fixed.", order_index=1),
            TemplateQuestion(id="q3", question_text="Why this role?", order_index=2),
        ],
    }
    values.update(overrides)
    return InterviewTemplate(**values)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def backend() -> InMemoryCacheBackend:
    return InMemoryCacheBackend()


@pytest.fixture
def cache(backend: InMemoryCacheBackend) -> SessionCache:
    return SessionCache(backend)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


async def seed_session(cache: SessionCache, template: InterviewTemplate, token: str = "tok") -> None:
    await initialize_session_cache(cache, token, session_id=f"session-{token}", template=template)


async def drain_tasks() -> None:
    """Let fire-and-forget tasks run to completion."""
    for _ in range(5):
        await asyncio.sleep(0)
