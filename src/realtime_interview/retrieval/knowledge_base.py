"""
Knowledge retrieval interface and in-memory implementation.

The orchestrator treats retrieval as a black box that returns the top-K
passages for a template. The SQL adapter in `realtime_interview.db` ranks stored
passages with the same keyword overlap as the in-memory index used by tests
and local runs.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable

from realtime_interview.orchestrator.schemas import KnowledgeChunk

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z0-9']+")
_STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "do", "does", "for", "from",
        "how", "i", "in", "is", "it", "me", "my", "of", "on", "or", "the", "to",
        "what", "when", "where", "who", "why", "with", "you", "your",
    }
)


def keyword_terms(text: str) -> set[str]:
    """Lowercased content words of `text`, stopwords removed."""
    return {w for w in _WORD_RE.findall(text.lower()) if w not in _STOPWORDS}


def rank_by_overlap(query: str, chunks: Iterable[KnowledgeChunk], top_k: int) -> list[KnowledgeChunk]:
    """
    Score passages by the share of query terms they contain.

    Args:
        query: Search text.
        chunks: Candidate passages.
        top_k: Maximum passages to return.

    Returns:
        Matching passages with `similarity` set, best first.
    """
    query_terms = keyword_terms(query)
    if not query_terms:
        return []

    scored: list[KnowledgeChunk] = []
    for chunk in chunks:
        overlap = query_terms & keyword_terms(chunk.content)
        if not overlap:
            continue
        similarity = len(overlap) / len(query_terms)
        scored.append(chunk.model_copy(update={"similarity": similarity}))

    scored.sort(key=lambda c: c.similarity, reverse=True)
    return scored[:top_k]


class KnowledgeRetrieverBase(ABC):
    """Abstract base class for knowledge retrievers."""

    @abstractmethod
    async def retrieve(self, template_id: str, query: str, top_k: int = 5) -> list[KnowledgeChunk]:
        """
        Find passages relevant to a query within one template's knowledge.

        Args:
            template_id: Template whose knowledge base is searched.
            query: Search text.
            top_k: Maximum passages to return.

        Returns:
            Passages ordered by descending similarity.
        """
        ...


class InMemoryKnowledgeBase(KnowledgeRetrieverBase):
    """Keyword-overlap retriever over passages held in memory."""

    def __init__(self) -> None:
        self._chunks: dict[str, list[KnowledgeChunk]] = {}

    def add_chunks(self, template_id: str, chunks: list[KnowledgeChunk]) -> None:
        self._chunks.setdefault(template_id, []).extend(chunks)

    async def retrieve(self, template_id: str, query: str, top_k: int = 5) -> list[KnowledgeChunk]:
        ranked = rank_by_overlap(query, self._chunks.get(template_id, []), top_k)
        logger.debug(f"[RAG] {len(ranked)} matching chunks for template {template_id}")
        return ranked
