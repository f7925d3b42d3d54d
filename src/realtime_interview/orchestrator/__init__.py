"""
Orchestrator module for managing interview flow and coordination.

`InterviewOrchestrator` and `SessionTimer` live in their own modules and are
imported from there, so the cache layer can depend on the schemas here.
"""

from realtime_interview.orchestrator.schemas import (
    ControllerDecision,
    EvaluationDecision,
    InterviewTemplate,
    MessageRole,
    MessageType,
    NextAction,
    QuestionSnapshot,
    ReconnectionState,
    SessionState,
    SessionStatus,
    TemplateMode,
    TurnType,
)

__all__ = [
    "ControllerDecision",
    "EvaluationDecision",
    "InterviewTemplate",
    "MessageRole",
    "MessageType",
    "NextAction",
    "QuestionSnapshot",
    "ReconnectionState",
    "SessionState",
    "SessionStatus",
    "TemplateMode",
    "TurnType",
]
