"""
Collaborator interfaces the orchestrator depends on.

Concrete implementations live in `transport`, `db`, and `jobs`; tests supply
their own fakes.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from realtime_interview.orchestrator.schemas import (
    EvaluationDecision,
    InterviewTemplate,
    TranscriptMessage,
)


@runtime_checkable
class Transport(Protocol):
    """Narrow outbound channel to one connected client."""

    async def emit(self, event: str, payload: Any = None) -> None: ...


class TemplateStore(Protocol):
    async def get_template(self, template_id: str) -> InterviewTemplate | None: ...


class DecisionSink(Protocol):
    """Write-only audit log of per-turn decisions."""

    async def record_decision(self, decision: EvaluationDecision) -> None: ...


class TranscriptSink(Protocol):
    """Durable transcript storage."""

    async def record_message(self, message: TranscriptMessage) -> None: ...

    async def append_to_last_candidate_message(
        self, session_id: str, question_id: str | None, addition: str
    ) -> bool:
        """Extend the newest candidate message for a question; False if there is none."""
        ...


class JobQueue(Protocol):
    """Queue for background post-processing jobs."""

    async def enqueue(self, name: str, payload: dict[str, Any]) -> None: ...
