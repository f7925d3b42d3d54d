"""
SQL adapters for the orchestrator's storage ports.

Each adapter opens a short-lived session per call from an
`async_sessionmaker`, so they are safe to share across connections.
"""

import logging

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import selectinload

from realtime_interview.db.models import (
    Base,
    EvaluationDecisionModel,
    KnowledgeChunkModel,
    TemplateModel,
    TranscriptMessageModel,
)
from realtime_interview.orchestrator.schemas import (
    EvaluationDecision,
    InterviewTemplate,
    KnowledgeChunk,
    MessageRole,
    TemplateMode,
    TemplateQuestion,
    TranscriptMessage,
)
from realtime_interview.retrieval.knowledge_base import KnowledgeRetrieverBase, keyword_terms, rank_by_overlap

logger = logging.getLogger(__name__)


def create_session_factory(database_url: str, echo: bool = False) -> async_sessionmaker[AsyncSession]:
    """
    Build a session factory for the given database URL.

    Args:
        database_url: SQLAlchemy async URL, e.g. `postgresql+asyncpg://...`.
        echo: Log emitted SQL.

    Returns:
        Session factory bound to a new engine.
    """
    engine = create_async_engine(database_url, echo=echo)
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class SqlTemplateStore:
    """Reads interview templates with their ordered questions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_template(self, template_id: str) -> InterviewTemplate | None:
        """
        Load a template by id.

        Args:
            template_id: Template primary key.

        Returns:
            The template, or None if it does not exist.
        """
        stmt = (
            select(TemplateModel)
            .where(TemplateModel.id == template_id)
            .options(selectinload(TemplateModel.questions))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return self._to_schema(row)

    @staticmethod
    def _to_schema(row: TemplateModel) -> InterviewTemplate:
        return InterviewTemplate(
            id=row.id,
            name=row.name,
            mode=TemplateMode(row.mode),
            persona_prompt=row.persona_prompt,
            tone_guidance=row.tone_guidance,
            global_followup_limit=row.global_followup_limit,
            time_limit_minutes=row.time_limit_minutes,
            enable_voice_output=row.enable_voice_output,
            voice_intro_message=row.voice_intro_message,
            inquiry_welcome=row.inquiry_welcome,
            inquiry_goal=row.inquiry_goal,
            questions=[
                TemplateQuestion(
                    id=q.id,
                    question_text=q.question_text,
                    rubric=q.rubric,
                    max_followups=q.max_followups,
                    order_index=q.order_index,
                )
                for q in row.questions
            ],
        )


class SqlDecisionSink:
    """Append-only evaluation log."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record_decision(self, decision: EvaluationDecision) -> None:
        row = EvaluationDecisionModel(
            session_id=decision.session_id,
            question_id=decision.question_id,
            turn_type=decision.turn_type.value,
            is_sufficient=decision.is_sufficient,
            missing_points=list(decision.missing_points),
            next_action=decision.next_action.value,
            followup_question=decision.followup_question,
            raw_output=decision.raw_output,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()


class SqlTranscriptSink:
    """Durable transcript storage."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record_message(self, message: TranscriptMessage) -> None:
        row = TranscriptMessageModel(
            session_id=message.session_id,
            question_id=message.question_id,
            role=message.role.value,
            content=message.content,
            message_type=message.message_type.value,
            timestamp_ms=message.timestamp_ms,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()

    async def append_to_last_candidate_message(
        self,
        session_id: str,
        question_id: str | None,
        addition: str,
    ) -> bool:
        """
        Extend the newest candidate message for a question.

        Args:
            session_id: Session the message belongs to.
            question_id: Question the message answered.
            addition: Text to append after a space.

        Returns:
            True if a message was amended, False if none exists.
        """
        stmt = select(TranscriptMessageModel).where(
            TranscriptMessageModel.session_id == session_id,
            TranscriptMessageModel.role == MessageRole.CANDIDATE.value,
        )
        if question_id is None:
            stmt = stmt.where(TranscriptMessageModel.question_id.is_(None))
        else:
            stmt = stmt.where(TranscriptMessageModel.question_id == question_id)
        stmt = stmt.order_by(TranscriptMessageModel.timestamp_ms.desc()).limit(1)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                return False
            row.content = f"{row.content} {addition}"
            await session.commit()
            return True


class SqlKnowledgeRetriever(KnowledgeRetrieverBase):
    """
    Keyword retriever over the `knowledge_chunks` table.

    Passages sharing at least one query term are fetched with a
    case-insensitive match, then ranked by term overlap.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], max_candidates: int = 200) -> None:
        self._session_factory = session_factory
        self._max_candidates = max_candidates

    async def retrieve(self, template_id: str, query: str, top_k: int = 5) -> list[KnowledgeChunk]:
        terms = sorted(keyword_terms(query))
        if not terms:
            return []

        logger.info(f"[RAG] Searching template {template_id} for: {query[:50]!r}")
        stmt = (
            select(KnowledgeChunkModel)
            .where(
                KnowledgeChunkModel.template_id == template_id,
                or_(*(KnowledgeChunkModel.content.ilike(f"%{term}%") for term in terms)),
            )
            .order_by(KnowledgeChunkModel.chunk_index)
            .limit(self._max_candidates)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()

        candidates = [
            KnowledgeChunk(content=row.content, section=row.section, page_number=row.page_number) for row in rows
        ]
        ranked = rank_by_overlap(query, candidates, top_k)
        logger.info(f"[RAG] Found {len(ranked)} chunks")
        return ranked
