import pytest

from realtime_interview.orchestrator.schemas import KnowledgeChunk
from realtime_interview.retrieval import (
    InMemoryKnowledgeBase,
    extract_question_for_retrieval,
    format_knowledge_context,
    is_likely_candidate_question,
)


@pytest.mark.parametrize(
    "text",
    [
        "Is this role remote?",
        "what does the team use for deployments",
        "Tell me about the company culture.",
        "I'm curious about growth paths",
        "I would love to hear about the benefits",
    ],
)
def test_detects_candidate_questions(text: str) -> None:
    assert is_likely_candidate_question(text)


@pytest.mark.parametrize(
    "text",
    [
        "I spent five years building payment systems.",
        "Mostly Python and some Go.",
        "",
    ],
)
def test_ordinary_answers_are_not_questions(text: str) -> None:
    assert not is_likely_candidate_question(text)


def test_retrieval_query_strips_lead_in() -> None:
    assert extract_question_for_retrieval("I was wondering what the hours are") == "what the hours are"
    assert extract_question_for_retrieval("Tell me about the team") == "the team"
    assert extract_question_for_retrieval("What is the salary range?") == "what is the salary range?"


def test_format_knowledge_context_numbers_passages() -> None:
    chunks = [
        KnowledgeChunk(content="Hybrid, two days in office.", section="Policy"),
        KnowledgeChunk(content="Series B, 80 people."),
    ]
    assert format_knowledge_context(chunks) == "[1] (Policy) Hybrid, two days in office.\n\n[2] Series B, 80 people."
    assert format_knowledge_context([]) is None


@pytest.mark.asyncio
async def test_in_memory_knowledge_base_ranks_by_overlap() -> None:
    kb = InMemoryKnowledgeBase()
    kb.add_chunks(
        "tpl",
        [
            KnowledgeChunk(content="Salary bands are published internally."),
            KnowledgeChunk(content="Remote salary is adjusted by region and level."),
            KnowledgeChunk(content="We use Kubernetes."),
        ],
    )

    results = await kb.retrieve("tpl", "remote salary level", top_k=2)

    assert [r.content for r in results] == [
        "Remote salary is adjusted by region and level.",
        "Salary bands are published internally.",
    ]
    assert results[0].similarity == pytest.approx(1.0)
    assert await kb.retrieve("other", "remote salary") == []
