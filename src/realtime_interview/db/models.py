"""
SQLAlchemy models for database persistence.

Defines the durable schema: interview templates and their questions, the
transcript, the per-turn evaluation audit log, and knowledge passages.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class TemplateModel(Base):
    """Database model for interview templates."""

    __tablename__ = "interview_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    mode: Mapped[str] = mapped_column(String(32), default="application", nullable=False)
    persona_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    tone_guidance: Mapped[str | None] = mapped_column(Text, nullable=True)
    global_followup_limit: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    time_limit_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    enable_voice_output: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    voice_intro_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    inquiry_welcome: Mapped[str | None] = mapped_column(Text, nullable=True)
    inquiry_goal: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    # Relationships
    questions: Mapped[list["TemplateQuestionModel"]] = relationship(
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="TemplateQuestionModel.order_index",
    )


class TemplateQuestionModel(Base):
    """Database model for the ordered questions of a template."""

    __tablename__ = "template_questions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    template_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("interview_templates.id"),
        nullable=False,
        index=True,
    )
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    rubric: Mapped[str | None] = mapped_column(Text, nullable=True)
    max_followups: Mapped[int] = mapped_column(Integer, default=2, nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Relationships
    template: Mapped["TemplateModel"] = relationship(back_populates="questions")


class TranscriptMessageModel(Base):
    """Database model for transcript lines."""

    __tablename__ = "transcript_messages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    question_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(32), nullable=False)
    timestamp_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )


class EvaluationDecisionModel(Base):
    """Database model for the append-only per-turn decision log."""

    __tablename__ = "evaluation_decisions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    question_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    turn_type: Mapped[str] = mapped_column(String(32), nullable=False)
    is_sufficient: Mapped[bool] = mapped_column(Boolean, nullable=False)
    missing_points: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    next_action: Mapped[str] = mapped_column(String(32), nullable=False)
    followup_question: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_output: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )


class KnowledgeChunkModel(Base):
    """Database model for indexed knowledge passages of a template."""

    __tablename__ = "knowledge_chunks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    template_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("interview_templates.id"),
        nullable=False,
        index=True,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    section: Mapped[str | None] = mapped_column(String(255), nullable=True)
    page_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    chunk_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
