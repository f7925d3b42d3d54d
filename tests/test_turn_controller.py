"""
Tests for the decision step and its deterministic fallback.
"""

from typing import Any

import pytest

from realtime_interview.agents.turn_controller import TurnContext, TurnController
from realtime_interview.config import Settings
from realtime_interview.models.llm_client import LLMError, Message
from realtime_interview.orchestrator.schemas import (
    ControllerDecision,
    KnowledgeChunk,
    MessageRole,
    NextAction,
    TranscriptEntry,
    TurnType,
)


class FakeJSONClient:
    def __init__(self, result: dict[str, Any] | Exception) -> None:
        self.result = result
        self.calls: list[tuple[list[Message], dict[str, Any]]] = []

    async def chat_with_json_strict(self, messages: list[Message], **kwargs: Any) -> dict[str, Any]:
        self.calls.append((messages, kwargs))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def context() -> TurnContext:
    return TurnContext(
        question_text="Tell me about a project you led.",
        rubric="Scope, team size, outcome",
        conversation=[
            TranscriptEntry(role=MessageRole.AI, content="Tell me about a project you led."),
            TranscriptEntry(role=MessageRole.CANDIDATE, content="I led a migration."),
        ],
        latest_candidate_input="I led a migration.",
        followups_used=1,
        max_followups=2,
        knowledge_chunks=[KnowledgeChunk(content="The role leads a team of five.")],
        candidate_files_summary="**resume.pdf**:\nStaff engineer",
    )


def make_controller(result: dict[str, Any] | Exception, settings: Settings) -> tuple[TurnController, FakeJSONClient]:
    client = FakeJSONClient(result)
    return TurnController(llm_client=client, settings=settings), client  # type: ignore[arg-type]


class TestPrompt:
    def test_prompt_contains_turn_context(self, context: TurnContext, settings: Settings) -> None:
        controller, _ = make_controller({}, settings)

        prompt = controller.build_prompt(context)

        assert 'You asked: "Tell me about a project you led."' in prompt
        assert "Looking for: Scope, team size, outcome" in prompt
        assert "INTERVIEWER (you): Tell me about a project you led." in prompt
        assert "CANDIDATE: I led a migration." in prompt
        assert "Follow-ups left: 1" in prompt
        assert "CANDIDATE'S DOCUMENTS" in prompt
        assert "[1] The role leads a team of five." in prompt
        assert prompt.endswith("Output JSON.")

    def test_prompt_omits_empty_sections(self, settings: Settings) -> None:
        controller, _ = make_controller({}, settings)

        prompt = controller.build_prompt(TurnContext(question_text="Why us?"))

        assert "Looking for" not in prompt
        assert "CANDIDATE'S DOCUMENTS" not in prompt
        assert "COMPANY/ROLE INFO" not in prompt


class TestDecide:
    @pytest.mark.asyncio
    async def test_valid_output_is_parsed(self, context: TurnContext, settings: Settings) -> None:
        controller, client = make_controller(
            {
                "turn_type": "answer",
                "is_sufficient": False,
                "missing_points": "team size",
                "next_action": "ask_followup",
                "followup_question": "How big was the team?",
                "kb_citations": None,
            },
            settings,
        )

        decision = await controller.decide(context, session_token="tok")

        assert decision.turn_type == TurnType.ANSWER
        assert decision.next_action == NextAction.ASK_FOLLOWUP
        assert decision.missing_points == ["team size"]
        assert decision.kb_citations == []
        assert decision.followup_question == "How big was the team?"

        messages, kwargs = client.calls[0]
        assert messages[0].role == "system"
        assert kwargs["model"] == settings.controller_model
        assert kwargs["temperature"] == settings.controller_temperature

    @pytest.mark.asyncio
    async def test_model_failure_falls_back_to_advance(self, context: TurnContext, settings: Settings) -> None:
        controller, _ = make_controller(LLMError("model server down"), settings)

        decision = await controller.decide(context)

        assert decision == ControllerDecision.fallback()

    @pytest.mark.asyncio
    async def test_invalid_action_falls_back_to_advance(self, context: TurnContext, settings: Settings) -> None:
        controller, _ = make_controller({"turn_type": "ANSWER", "next_action": "DANCE"}, settings)

        decision = await controller.decide(context)

        assert decision.next_action == NextAction.ADVANCE_QUESTION
        assert decision.is_sufficient is True

    @pytest.mark.asyncio
    async def test_missing_action_falls_back_to_advance(self, context: TurnContext, settings: Settings) -> None:
        controller, _ = make_controller({"turn_type": "ANSWER"}, settings)

        decision = await controller.decide(context)

        assert decision.next_action == NextAction.ADVANCE_QUESTION


def test_followups_left_never_negative() -> None:
    assert TurnContext(question_text="q", followups_used=3, max_followups=2).followups_left == 0
