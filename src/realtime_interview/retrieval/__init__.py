"""
Retrieval module for knowledge-grounded answers.

Provides the retriever interface consumed by the orchestrator and the
heuristics that shape each turn's query.
"""

from realtime_interview.retrieval.knowledge_base import (
    InMemoryKnowledgeBase,
    KnowledgeRetrieverBase,
    keyword_terms,
    rank_by_overlap,
)
from realtime_interview.retrieval.query_heuristics import (
    extract_question_for_retrieval,
    format_knowledge_context,
    is_likely_candidate_question,
)

__all__ = [
    "InMemoryKnowledgeBase",
    "KnowledgeRetrieverBase",
    "extract_question_for_retrieval",
    "format_knowledge_context",
    "is_likely_candidate_question",
    "keyword_terms",
    "rank_by_overlap",
]
