"""Cheap heuristics deciding how to query the knowledge base for a turn."""

from __future__ import annotations

from collections.abc import Sequence

from realtime_interview.orchestrator.schemas import KnowledgeChunk

QUESTION_WORDS = frozenset(
    {"what", "how", "when", "where", "who", "why", "is", "are", "do", "does", "can", "will", "would", "could", "should"}
)

QUESTION_PHRASES = (
    "tell me about",
    "can you explain",
    "i was wondering",
    "i'd like to know",
    "could you tell me",
    "what's it like",
    "how does",
    "what do you",
    "i'm curious",
    "wondering if",
    "know more about",
    "interested in knowing",
    "explain to me",
)

TOPIC_PHRASES = (
    "the role",
    "the position",
    "the team",
    "the company",
    "the culture",
    "the process",
    "next steps",
    "the salary",
    "the benefits",
    "the schedule",
    "remote work",
    "work from home",
    "the office",
    "the hours",
)

RETRIEVAL_PREFIXES = (
    "i was wondering",
    "i'd like to know",
    "could you tell me",
    "can you explain",
    "tell me about",
    "what about",
    "how about",
)


def is_likely_candidate_question(text: str) -> bool:
    """Return True if the utterance reads like the candidate asking something."""
    lowered = text.strip().lower()

    if "?" in text:
        return True

    words = lowered.split()
    if words and words[0] in QUESTION_WORDS:
        return True

    if any(phrase in lowered for phrase in QUESTION_PHRASES):
        return True

    return any(topic in lowered for topic in TOPIC_PHRASES)


def extract_question_for_retrieval(text: str) -> str:
    """Strip a conversational lead-in so the retrieval query is the question itself."""
    cleaned = text.lower()
    for prefix in RETRIEVAL_PREFIXES:
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix) :].strip()
            break
    return cleaned or text


def format_knowledge_context(chunks: Sequence[KnowledgeChunk]) -> str | None:
    """Number passages as `[i] (section) content` blocks for prompts."""
    if not chunks:
        return None
    blocks = []
    for i, chunk in enumerate(chunks, start=1):
        section = f"({chunk.section}) " if chunk.section else ""
        blocks.append(f"[{i}] {section}{chunk.content}")
    return "\n\n".join(blocks)
