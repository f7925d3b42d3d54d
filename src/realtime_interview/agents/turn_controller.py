"""
Turn controller agent.

Asks the fast decision model what should happen after a candidate turn and
turns its JSON into a validated `ControllerDecision`. Any failure resolves to
the deterministic advance decision so the interview never stalls.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

from pydantic import BaseModel, Field, ValidationError

from realtime_interview.config import Settings, get_settings
from realtime_interview.models.llm_client import LLMClient, LLMError, Message
from realtime_interview.orchestrator.schemas import (
    ControllerDecision,
    KnowledgeChunk,
    MessageRole,
    TranscriptEntry,
)

logger = logging.getLogger(__name__)


class TurnContext(BaseModel):
    """Everything the decision model sees for one turn."""

    question_text: str = Field(..., description="Current fixed question")
    rubric: str | None = Field(default=None, description="What a sufficient answer covers")
    conversation: list[TranscriptEntry] = Field(default_factory=list)
    latest_candidate_input: str = ""
    followups_used: int = 0
    max_followups: int = 2
    global_followup_limit: int = 3
    knowledge_chunks: list[KnowledgeChunk] = Field(default_factory=list)
    candidate_files_summary: str | None = None

    @property
    def followups_left(self) -> int:
        return max(0, self.max_followups - self.followups_used)


class TurnControllerBase(ABC):
    """Abstract base class for turn controllers."""

    @abstractmethod
    async def decide(self, context: TurnContext, *, session_token: str = "") -> ControllerDecision:
        """
        Choose the next action for a turn.

        Args:
            context: Question, history and retrieved knowledge for the turn.
            session_token: Used only for log correlation.

        Returns:
            A validated decision; never raises for model failures.
        """
        ...


class TurnController(TurnControllerBase):
    """LLM-backed decision step with a deterministic fallback."""

    CONTROLLER_SYSTEM_PROMPT = """You are controlling an INTERVIEW conversation. You are the interviewer, they are the candidate. Output JSON only.

{
  "turn_type": "ANSWER" | "CANDIDATE_QUESTION" | "META",
  "is_sufficient": boolean,
  "missing_points": string[],
  "next_action": "ASK_FOLLOWUP" | "ADVANCE_QUESTION" | "ANSWER_CANDIDATE_QUESTION" | "HANDLE_META" | "END_INTERVIEW",
  "followup_question": string | null,
  "candidate_answer_summary": string | null,
  "detected_candidate_question": string | null,
  "kb_answer": string | null,
  "kb_citations": string[],
  "file_reference": string | null
}

TURN TYPES:
- CANDIDATE_QUESTION: Candidate asked YOU something (about role, company, process, or "what do you know about me?")
- ANSWER: Candidate is answering YOUR question
- META: Small talk, "give me a moment", etc.

IF candidate asked a question (CANDIDATE_QUESTION):
- Set detected_candidate_question to what they asked
- Set next_action="ANSWER_CANDIDATE_QUESTION"
- If they ask "what do you know about me?" reference their documents in kb_answer
- Otherwise use knowledge chunks to answer (be helpful, 2-3 sentences)

IF candidate answered (ANSWER):
- Evaluate if sufficient based on rubric
- If not sufficient and follow-ups are left: set followup_question and next_action="ASK_FOLLOWUP"
- If sufficient or no follow-ups are left: ADVANCE_QUESTION

Be natural."""

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize the turn controller.

        Args:
            llm_client: LLM client for decisions. Creates default if None.
            settings: Application settings (uses cached settings if None).
        """
        self._settings = settings or get_settings()
        self._llm_client = llm_client or LLMClient(model=self._settings.controller_model)

    def build_prompt(self, context: TurnContext) -> str:
        """Render the user prompt for the decision model."""
        history = "\n".join(
            f"{'INTERVIEWER (you)' if entry.role == MessageRole.AI else 'CANDIDATE'}: {entry.content}"
            for entry in context.conversation
        )
        lines = [f'You asked: "{context.question_text}"']
        if context.rubric:
            lines.append(f"Looking for: {context.rubric}")
        prompt = "\n".join(lines)
        prompt += f"\n\nConversation:\n{history}"
        prompt += f'\n\nCandidate just said: "{context.latest_candidate_input}"'
        prompt += f"\n\nFollow-ups left: {context.followups_left}"
        prompt += f"\nOverall follow-up guideline for the interview: {context.global_followup_limit}"

        if context.candidate_files_summary:
            prompt += f"\n\nCANDIDATE'S DOCUMENTS (this is about THEM):\n{context.candidate_files_summary}"

        if context.knowledge_chunks:
            knowledge = "\n".join(f"[{i}] {c.content}" for i, c in enumerate(context.knowledge_chunks, start=1))
            prompt += f"\n\nCOMPANY/ROLE INFO (share with candidate if they ask):\n{knowledge}"

        prompt += "\n\nWhat should happen next? Output JSON."
        return prompt

    async def decide(self, context: TurnContext, *, session_token: str = "") -> ControllerDecision:
        messages = [
            Message(role="system", content=self.CONTROLLER_SYSTEM_PROMPT),
            Message(role="user", content=self.build_prompt(context)),
        ]
        started = time.perf_counter()

        try:
            raw = await self._llm_client.chat_with_json_strict(
                messages=messages,
                temperature=self._settings.controller_temperature,
                max_tokens=self._settings.controller_max_tokens,
                model=self._settings.controller_model,
            )
        except LLMError as e:
            logger.error(f"Decision model failed for session {session_token}: {e}; advancing")
            return ControllerDecision.fallback()

        try:
            decision = ControllerDecision.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Decision model output rejected for session {session_token}: {e}; advancing")
            return ControllerDecision.fallback()

        latency_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"Decision for session {session_token}: {decision.next_action.value} "
            f"({decision.turn_type.value}, sufficient={decision.is_sufficient}) in {latency_ms:.0f}ms"
        )
        return decision
