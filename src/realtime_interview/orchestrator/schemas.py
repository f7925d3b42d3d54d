"""
Pydantic schemas for the orchestrator module.

Defines the cached session state, the decision-model contract, and the
records handed to storage collaborators.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class SessionStatus(str, Enum):
    """Lifecycle status of an interview session."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class MessageRole(str, Enum):
    """Speaker of a transcript entry."""

    AI = "ai"
    CANDIDATE = "candidate"


class TemplateMode(str, Enum):
    """Top-level conversation mode of a template."""

    APPLICATION = "application"
    INQUIRY = "inquiry"


class MessageType(str, Enum):
    """Classification of a persisted transcript message."""

    FIXED_QUESTION = "fixed_question"
    FOLLOWUP = "followup"
    ANSWER = "answer"
    CANDIDATE_QUESTION = "candidate_question"
    KB_ANSWER = "kb_answer"
    META = "meta"


class TurnType(str, Enum):
    """How the decision model classified the candidate's turn."""

    ANSWER = "ANSWER"
    CANDIDATE_QUESTION = "CANDIDATE_QUESTION"
    META = "META"


class NextAction(str, Enum):
    """Closed set of actions the orchestrator can take after a turn."""

    ASK_FOLLOWUP = "ASK_FOLLOWUP"
    ADVANCE_QUESTION = "ADVANCE_QUESTION"
    ANSWER_CANDIDATE_QUESTION = "ANSWER_CANDIDATE_QUESTION"
    HANDLE_META = "HANDLE_META"
    END_INTERVIEW = "END_INTERVIEW"


class _CachedModel(BaseModel):
    """Base for models stored in the session cache with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QuestionSnapshot(_CachedModel):
    """Immutable copy of a template question taken at session start."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(..., description="Question identifier in template storage")
    text: str = Field(..., description="Exact question text, asked verbatim")
    rubric: str | None = Field(default=None, description="What a sufficient answer covers")
    max_followups: int = Field(default=2, ge=0, description="Per-question follow-up budget")


class TranscriptEntry(_CachedModel):
    """One utterance in the recent transcript window."""

    role: MessageRole
    content: str
    timestamp: int = Field(default_factory=now_ms, description="Epoch milliseconds")


class SessionState(_CachedModel):
    """Live state of one interview session, as held in the cache."""

    session_id: str = Field(..., description="Session identifier in durable storage")
    template_id: str = Field(..., description="Template the session was created from")
    current_question_index: int = Field(default=0, ge=0)
    followups_used_current: int = Field(default=0, ge=0)
    status: SessionStatus = Field(default=SessionStatus.IN_PROGRESS)
    questions: list[QuestionSnapshot] = Field(default_factory=list)
    recent_transcript: list[TranscriptEntry] = Field(default_factory=list)
    candidate_files_summary: str | None = Field(default=None)
    awaiting_intro_response: bool = Field(
        default=False,
        description="Voice intro was sent and the first question waits for a reply",
    )
    pending_partial: str | None = Field(
        default=None,
        description="Latest partial transcript, kept for interrupts",
    )

    @property
    def current_question(self) -> QuestionSnapshot | None:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    @property
    def latest_candidate_input(self) -> str:
        for entry in reversed(self.recent_transcript):
            if entry.role == MessageRole.CANDIDATE:
                return entry.content
        return ""

    def to_cache(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_cache(cls, raw: str | bytes) -> SessionState:
        return cls.model_validate_json(raw)


class ReconnectionState(BaseModel):
    """Last server-confirmed facts a client keeps for resynchronization."""

    last_question_index: int = 0
    last_ai_message: str = ""
    pending_transcript: str = ""


class TemplateQuestion(BaseModel):
    """A question as stored with its template."""

    id: str
    question_text: str
    rubric: str | None = None
    max_followups: int = 2
    order_index: int = 0


class InterviewTemplate(BaseModel):
    """Template configuration consumed by the orchestrator."""

    id: str
    name: str = ""
    mode: TemplateMode = TemplateMode.APPLICATION
    persona_prompt: str = "A friendly, professional interviewer."
    tone_guidance: str | None = None
    global_followup_limit: int = 3
    time_limit_minutes: int = 30
    enable_voice_output: bool = False
    voice_intro_message: str | None = None
    inquiry_welcome: str | None = None
    inquiry_goal: str | None = None
    questions: list[TemplateQuestion] = Field(default_factory=list)


class CandidateFile(BaseModel):
    """An uploaded reference document and its extraction status."""

    filename: str
    extracted_text: str | None = None
    status: str = "pending"


class KnowledgeChunk(BaseModel):
    """A passage returned by knowledge retrieval."""

    content: str
    section: str | None = None
    page_number: int | None = None
    similarity: float = 0.0


class ControllerDecision(BaseModel):
    """Structured output of the decision model."""

    turn_type: TurnType = TurnType.ANSWER
    is_sufficient: bool = True
    missing_points: list[str] = Field(default_factory=list)
    next_action: NextAction
    followup_question: str | None = None
    candidate_answer_summary: str | None = None
    detected_candidate_question: str | None = None
    kb_answer: str | None = None
    kb_citations: list[str] = Field(default_factory=list)
    file_reference: str | None = None

    @field_validator("turn_type", "next_action", mode="before")
    @classmethod
    def _normalize_enum(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("missing_points", "kb_citations", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        return value

    @classmethod
    def fallback(cls) -> ControllerDecision:
        """Deterministic decision used whenever the model cannot be trusted."""
        return cls(
            turn_type=TurnType.ANSWER,
            is_sufficient=True,
            missing_points=[],
            next_action=NextAction.ADVANCE_QUESTION,
        )


class EvaluationDecision(BaseModel):
    """Append-only audit record written once per turn."""

    session_id: str
    question_id: str | None = None
    turn_type: TurnType
    is_sufficient: bool
    missing_points: list[str] = Field(default_factory=list)
    next_action: NextAction
    followup_question: str | None = None
    raw_output: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_decision(
        cls,
        decision: ControllerDecision,
        *,
        session_id: str,
        question_id: str | None,
    ) -> EvaluationDecision:
        return cls(
            session_id=session_id,
            question_id=question_id,
            turn_type=decision.turn_type,
            is_sufficient=decision.is_sufficient,
            missing_points=list(decision.missing_points),
            next_action=decision.next_action,
            followup_question=decision.followup_question,
            raw_output=decision.model_dump(mode="json"),
        )


class TranscriptMessage(BaseModel):
    """A transcript line handed to durable storage."""

    session_id: str
    question_id: str | None = None
    role: MessageRole
    content: str
    message_type: MessageType
    timestamp_ms: int = Field(default_factory=now_ms)
