"""
Database module for persistence.

Provides SQLAlchemy models and the SQL adapters behind the orchestrator's
template, transcript, decision and knowledge ports.
"""

from realtime_interview.db.models import (
    Base,
    EvaluationDecisionModel,
    KnowledgeChunkModel,
    TemplateModel,
    TemplateQuestionModel,
    TranscriptMessageModel,
)
from realtime_interview.db.repository import (
    SqlDecisionSink,
    SqlKnowledgeRetriever,
    SqlTemplateStore,
    SqlTranscriptSink,
    create_schema,
    create_session_factory,
)

__all__ = [
    "Base",
    "EvaluationDecisionModel",
    "KnowledgeChunkModel",
    "TemplateModel",
    "TemplateQuestionModel",
    "TranscriptMessageModel",
    "SqlDecisionSink",
    "SqlKnowledgeRetriever",
    "SqlTemplateStore",
    "SqlTranscriptSink",
    "create_schema",
    "create_session_factory",
]
