"""
Interviewer response agent.

Builds the prompts for the response-generation model and streams its reply.
Fixed questions never pass through here; they are sent verbatim by the
orchestrator.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence

from realtime_interview.config import Settings, get_settings
from realtime_interview.models.llm_client import LLMClient, Message
from realtime_interview.orchestrator.schemas import (
    InterviewTemplate,
    KnowledgeChunk,
    MessageRole,
    NextAction,
    TranscriptEntry,
)
from realtime_interview.retrieval.query_heuristics import format_knowledge_context

logger = logging.getLogger(__name__)

DEFAULT_TONE = "Be warm, friendly, and genuinely curious about the candidate."


class Interviewer:
    """
    Phrases follow-ups, knowledge answers, meta acknowledgements and farewells.

    Streaming failures are raised to the caller as `LLMError`; the orchestrator
    owns the substitution policy.
    """

    INTERVIEWER_RULES = """IMPORTANT RULES:
- You are the interviewer. The candidate is talking TO you.
- Never speak from the candidate's perspective or use "my experience" about work/skills.
- When they ask "what do you know about me?", reference THEIR documents below.
- Keep responses brief (1-2 sentences). Ask one thing at a time."""

    INQUIRY_GUIDELINES = """Conversation Guidelines:
- Be genuinely helpful and curious
- Answer questions thoroughly using knowledge base when available
- If you don't know something, say so honestly
- Have a real conversation - respond to what they say, ask follow-up questions
- Keep responses focused (2-4 sentences typically, but longer if needed)
- If they share documents, reference specific details from them"""

    INQUIRY_DOCUMENTS_NOTE = """IMPORTANT: You have access to documents the visitor shared. Use this information to:
- Reference specific details from their documents
- Ask informed follow-up questions based on what they shared
- Connect their background to the conversation
- Provide personalized responses"""

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize the interviewer.

        Args:
            llm_client: LLM client for generation. Creates default if None.
            settings: Application settings (uses cached settings if None).
        """
        self._settings = settings or get_settings()
        self._llm_client = llm_client or LLMClient(model=self._settings.interviewer_model)

    def build_system_prompt(
        self,
        persona: str,
        tone_guidance: str | None = None,
        candidate_files: str | None = None,
        knowledge: str | None = None,
    ) -> str:
        prompt = (
            "You are an INTERVIEWER conducting a conversation with a candidate.\n\n"
            f"Your persona: {persona}\n"
            f"{tone_guidance or DEFAULT_TONE}\n\n"
            f"{self.INTERVIEWER_RULES}"
        )
        if candidate_files:
            prompt += (
                "\n\nTHE CANDIDATE'S BACKGROUND (from their uploaded documents - this is about THEM, not you):\n"
                f"{candidate_files}"
            )
        if knowledge:
            prompt += f"\n\nCOMPANY/ROLE INFO (you can share this with the candidate):\n{knowledge}"
        return prompt

    @staticmethod
    def build_action_prompt(
        action: NextAction,
        content: str | None = None,
        file_reference: str | None = None,
    ) -> str:
        """
        Render the instruction for one orchestrator action.

        Args:
            action: Action being phrased.
            content: Follow-up text, answer text, or what the candidate said.
            file_reference: Optional document the follow-up may cite.

        Returns:
            The user prompt for the response model.
        """
        match action:
            case NextAction.ASK_FOLLOWUP:
                if file_reference:
                    return f'Follow up naturally: "{content}" (You can reference: {file_reference})'
                return f'Follow up naturally: "{content}"'
            case NextAction.ANSWER_CANDIDATE_QUESTION:
                return f"The candidate asked you a question. Answer as the interviewer: {content}"
            case NextAction.HANDLE_META:
                return f'They said: "{content}" - respond naturally.'
            case NextAction.END_INTERVIEW:
                return "Wrap up warmly. Thank them and let them know next steps."
            case NextAction.ADVANCE_QUESTION:
                return content or ""

    def build_inquiry_system_prompt(
        self,
        template: InterviewTemplate,
        knowledge_chunks: Sequence[KnowledgeChunk] = (),
        files_summary: str | None = None,
    ) -> str:
        sections = [
            f"You are a helpful, intelligent assistant for {template.name}. "
            "Your role is to have a genuine conversation with visitors.",
            f"Persona: {template.persona_prompt}",
        ]
        if template.tone_guidance:
            sections.append(f"Tone: {template.tone_guidance}")
        if template.inquiry_goal:
            sections.append(f"Your Goal: {template.inquiry_goal}")
        sections.append(self.INQUIRY_GUIDELINES)

        knowledge = format_knowledge_context(knowledge_chunks)
        if knowledge:
            sections.append(f"Available Knowledge (use this to answer questions):\n{knowledge}")
        if files_summary:
            sections.append(f"VISITOR'S UPLOADED DOCUMENTS:\n{files_summary}\n\n{self.INQUIRY_DOCUMENTS_NOTE}")

        return "\n\n".join(sections)

    def stream_reply(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        """Stream an interviewer utterance for a single instruction."""
        messages = [
            Message(role="system", content=system_prompt),
            Message(role="user", content=user_prompt),
        ]
        return self._llm_client.stream_chat(
            messages,
            temperature=self._settings.interviewer_temperature,
            max_tokens=self._settings.interviewer_max_tokens,
            model=self._settings.interviewer_model,
        )

    def stream_inquiry_reply(
        self,
        system_prompt: str,
        history: Sequence[TranscriptEntry],
    ) -> AsyncIterator[str]:
        """Stream an inquiry-mode reply with the conversation as chat turns."""
        messages = [Message(role="system", content=system_prompt)]
        for entry in history:
            role = "user" if entry.role == MessageRole.CANDIDATE else "assistant"
            messages.append(Message(role=role, content=entry.content))
        return self._llm_client.stream_chat(
            messages,
            temperature=self._settings.inquiry_temperature,
            max_tokens=self._settings.inquiry_max_tokens,
            model=self._settings.interviewer_model,
        )
