"""
Interview orchestrator.

Drives one interview session turn by turn: reads the cached session state,
asks the decision model what to do next, and streams the interviewer's reply
to the client. Fixed questions are always sent verbatim; the response model
only phrases follow-ups, answers, meta responses and farewells.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import assert_never

from realtime_interview.agents.interviewer import Interviewer
from realtime_interview.agents.turn_controller import TurnContext, TurnController, TurnControllerBase
from realtime_interview.cache.session_cache import SessionCache
from realtime_interview.config import Settings, get_settings
from realtime_interview.models.llm_client import LLMClient, LLMError
from realtime_interview.orchestrator.ports import (
    DecisionSink,
    JobQueue,
    TemplateStore,
    TranscriptSink,
    Transport,
)
from realtime_interview.orchestrator.schemas import (
    ControllerDecision,
    EvaluationDecision,
    InterviewTemplate,
    KnowledgeChunk,
    MessageRole,
    MessageType,
    NextAction,
    QuestionSnapshot,
    SessionState,
    SessionStatus,
    TemplateMode,
    TranscriptMessage,
)
from realtime_interview.orchestrator.session_timer import SessionTimer
from realtime_interview.retrieval.knowledge_base import KnowledgeRetrieverBase
from realtime_interview.retrieval.query_heuristics import (
    extract_question_for_retrieval,
    format_knowledge_context,
    is_likely_candidate_question,
)
from realtime_interview.transport.events import ServerEvent

ADDITION_PREFIX = "[Addition to previous response]"
POST_PROCESS_JOB = "generate-summary"

KB_FALLBACK_ANSWER = (
    "That's a great question! I don't have the specific details on that, but I'll make sure "
    "to note your question for the hiring team to address. Is there anything else you'd like to know?"
)
STREAM_ERROR_MESSAGE = "I apologize, I'm having a technical issue. Could you please repeat that?"
INQUIRY_ERROR_MESSAGE = "I apologize, I'm having a technical issue. Could you please try again?"
TEMPLATE_MISSING_MESSAGE = "Interview configuration unavailable"
INTRO_ACKNOWLEDGEMENT = "Great! Let's begin."
DEFAULT_FOLLOWUP = "Could you tell me a little more about that?"


def default_inquiry_welcome(name: str) -> str:
    return (
        f"Hello! Welcome to {name or 'our assistant'}. I'm here to help answer your questions "
        "and assist you with any information you need. How can I help you today?"
    )


def default_voice_intro(name: str) -> str:
    return (
        f"Hello! Welcome to your {name or 'application'}. I'm here to learn more about you through "
        "a conversation. Before we begin, do you have any questions about the process? "
        "If not, just let me know you're ready and we'll get started."
    )


class InterviewOrchestrator:
    """
    Turn orchestrator for live interview sessions.

    The orchestrator holds no per-session state of its own: everything it
    needs is re-read from the session cache on every call. It expects exactly
    one caller per session at a time; the transport server serializes turns.
    """

    def __init__(
        self,
        cache: SessionCache,
        templates: TemplateStore,
        controller: TurnControllerBase | None = None,
        interviewer: Interviewer | None = None,
        retriever: KnowledgeRetrieverBase | None = None,
        decision_sink: DecisionSink | None = None,
        transcript_sink: TranscriptSink | None = None,
        job_queue: JobQueue | None = None,
        settings: Settings | None = None,
        llm_client: LLMClient | None = None,
        invalidate_grace_seconds: float | None = None,
        intro_pause_seconds: float = 0.5,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            cache: Session state cache; the only state that survives reconnects.
            templates: Source of template configuration.
            controller: Decision step. Built on `llm_client` if None.
            interviewer: Response generator. Built on `llm_client` if None.
            retriever: Knowledge retrieval; retrieval is skipped if None.
            decision_sink: Audit log for per-turn decisions.
            transcript_sink: Durable transcript storage.
            job_queue: Queue receiving the post-interview summary job.
            settings: Application settings (uses cached settings if None).
            llm_client: Shared client for the default agents.
            invalidate_grace_seconds: Delay before a completed session is evicted.
            intro_pause_seconds: Pause between the intro acknowledgement and the first question.
        """
        self._logger = logging.getLogger(__name__)
        self._settings = settings or get_settings()
        self._cache = cache
        self._templates = templates

        self._llm_client = llm_client
        if (controller is None or interviewer is None) and self._llm_client is None:
            self._llm_client = LLMClient()
        self._controller = controller or TurnController(llm_client=self._llm_client, settings=self._settings)
        self._interviewer = interviewer or Interviewer(llm_client=self._llm_client, settings=self._settings)

        self._retriever = retriever
        self._decision_sink = decision_sink
        self._transcript_sink = transcript_sink
        self._job_queue = job_queue

        self._invalidate_grace = (
            invalidate_grace_seconds
            if invalidate_grace_seconds is not None
            else self._settings.invalidate_grace_seconds
        )
        self._intro_pause = intro_pause_seconds

        self._audit_tasks: set[asyncio.Task[None]] = set()
        self._invalidation_tasks: set[asyncio.Task[None]] = set()

    @property
    def cache(self) -> SessionCache:
        return self._cache

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def resolve_time_limit(self, state: SessionState) -> int:
        """Session length in minutes from the template, or the configured default."""
        template = await self._templates.get_template(state.template_id)
        if template is None or template.time_limit_minutes <= 0:
            return self._settings.time_limit_minutes
        return template.time_limit_minutes

    async def start_session(
        self,
        transport: Transport,
        token: str,
        time_limit_minutes: int | None = None,
    ) -> SessionState | None:
        """
        Announce a (re)connected session and send its opening utterance.

        A session that already has conversation history is being resumed, so
        only `session_started` is sent.

        Args:
            transport: Channel to the connected client.
            token: Session token.
            time_limit_minutes: Overrides the template's limit in the announcement.

        Returns:
            The session state, or None if the session is unknown.
        """
        state = await self._cache.get(token)
        if state is None:
            self._logger.warning(f"start_session: no cached session for {token}")
            return None

        template = await self._templates.get_template(state.template_id)
        if time_limit_minutes is None:
            time_limit_minutes = template.time_limit_minutes if template else self._settings.time_limit_minutes

        await transport.emit(
            ServerEvent.SESSION_STARTED,
            {
                "sessionId": state.session_id,
                "currentQuestionIndex": state.current_question_index,
                "totalQuestions": len(state.questions),
                "timeLimitMinutes": time_limit_minutes,
            },
        )

        if state.recent_transcript or state.current_question_index > 0:
            self._logger.info(f"Session {token} resumed at question {state.current_question_index}")
            return state

        if template is None:
            self._logger.error(f"Template {state.template_id} not found for session {token}")
            return state

        if template.mode == TemplateMode.INQUIRY:
            welcome = template.inquiry_welcome or default_inquiry_welcome(template.name)
            self._logger.info(f"Inquiry session {token} started")
            await self._send_fixed(transport, token, state, welcome, MessageType.META, question_id=None)
        elif template.enable_voice_output:
            intro = template.voice_intro_message or default_voice_intro(template.name)
            await self._send_fixed(transport, token, state, intro, MessageType.META, question_id=None)
            await self._cache.update(token, awaiting_intro_response=True)
        else:
            first = state.current_question
            if first is None:
                self._logger.warning(f"Session {token} has no questions; ending")
                await self.end_session(transport, token)
                return await self._cache.get(token)
            await self._send_fixed(transport, token, state, first.text, MessageType.FIXED_QUESTION, first.id)

        return await self._cache.get(token)

    async def handle_candidate_input(
        self,
        transport: Transport,
        token: str,
        transcript: str,
        *,
        is_addition: bool = False,
        was_interrupted: bool = False,
    ) -> None:
        """
        Record a finalized candidate utterance and run the turn.

        Args:
            transport: Channel to the connected client.
            token: Session token.
            transcript: Final transcript text.
            is_addition: The text extends the previous answer instead of starting a turn.
            was_interrupted: The candidate spoke over the interviewer.
        """
        text = transcript.strip()
        if not text:
            return

        state = await self._cache.get(token)
        if state is None or state.status != SessionStatus.IN_PROGRESS:
            self._logger.debug(f"Ignoring input for inactive session {token}")
            return

        if await SessionTimer(self._cache.backend, token).is_expired():
            self._logger.info(f"Input after time limit for session {token}; ending")
            await transport.emit(ServerEvent.TIME_EXPIRED)
            await self.end_session(transport, token)
            return

        if text.startswith(ADDITION_PREFIX):
            text = text[len(ADDITION_PREFIX) :].strip()
            is_addition = True

        question = state.current_question
        question_id = question.id if question else None

        if is_addition:
            await self._record_addition(token, state, question_id, text)
            await transport.emit(
                ServerEvent.MESSAGE_RECEIVED,
                {"message": "Addition recorded", "isAddition": True},
            )
            return

        if was_interrupted:
            self._logger.info(f"Candidate interrupted the interviewer in session {token}")

        await self._cache.append_message(token, MessageRole.CANDIDATE, text)
        if state.pending_partial:
            await self._cache.update(token, pending_partial=None)
        await self._record_transcript(state.session_id, question_id, MessageRole.CANDIDATE, text, MessageType.ANSWER)

        await self.process_turn(transport, token)

    async def handle_partial(self, token: str, partial: str) -> None:
        """Remember the latest partial transcript; it never drives a turn."""
        await self._cache.update(token, pending_partial=partial)

    async def add_candidate_file(
        self,
        transport: Transport | None,
        token: str,
        file_id: str,
        filename: str,
        extracted_text: str,
    ) -> SessionState | None:
        """
        Fold a newly processed document into the session context.

        Args:
            transport: Connected client to notify, if any.
            token: Session token.
            file_id: Identifier of the uploaded file.
            filename: Display name.
            extracted_text: Text extracted from the document.

        Returns:
            The updated state, or None if the session is gone.
        """
        state = await self._cache.append_files_summary(token, filename, extracted_text)
        if state is None:
            return None
        self._logger.info(f"Added {filename} to session {token} context")
        if transport is not None:
            await transport.emit(ServerEvent.FILE_READY, {"fileId": file_id, "filename": filename})
        return state

    async def mark_abandoned(self, token: str) -> bool:
        """Move an in-progress session to `abandoned`; returns True if it changed."""
        state = await self._cache.get(token)
        if state is None or state.status != SessionStatus.IN_PROGRESS:
            return False
        await self._cache.update_status(token, SessionStatus.ABANDONED)
        self._logger.info(f"Session {token} marked abandoned")
        return True

    async def end_session(self, transport: Transport, token: str) -> None:
        """
        Say goodbye, complete the session, and schedule its eviction.

        Calling this on a session that is no longer in progress does nothing.
        """
        state = await self._cache.get(token)
        if state is None or state.status != SessionStatus.IN_PROGRESS:
            return

        template = await self._templates.get_template(state.template_id)
        if template is not None:
            prompt = self._interviewer.build_action_prompt(NextAction.END_INTERVIEW)
            await self._stream_utterance(
                transport,
                token,
                state,
                self._interviewer.stream_reply(self._system_prompt(template, state), prompt),
                MessageType.META,
                STREAM_ERROR_MESSAGE,
                question_id=self._question_id(state),
            )

        await self._cache.update_status(token, SessionStatus.COMPLETED)

        if self._job_queue is not None:
            try:
                await self._job_queue.enqueue(POST_PROCESS_JOB, {"sessionId": state.session_id})
            except Exception as e:
                self._logger.error(f"Failed to enqueue {POST_PROCESS_JOB} for session {state.session_id}: {e}")

        await transport.emit(ServerEvent.INTERVIEW_ENDED)
        self._logger.info(f"Session {token} completed")
        self._schedule_invalidation(token)

    async def aclose(self) -> None:
        """Wait for pending audit writes and cancel pending evictions."""
        if self._audit_tasks:
            await asyncio.gather(*self._audit_tasks, return_exceptions=True)
        for task in list(self._invalidation_tasks):
            task.cancel()
        if self._invalidation_tasks:
            await asyncio.gather(*self._invalidation_tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Turn processing
    # ------------------------------------------------------------------

    async def process_turn(self, transport: Transport, token: str) -> None:
        """
        Decide and act on the latest candidate utterance.

        Args:
            transport: Channel to the connected client.
            token: Session token.
        """
        state = await self._cache.get(token)
        if state is None or state.status != SessionStatus.IN_PROGRESS:
            return

        template = await self._templates.get_template(state.template_id)
        if template is None:
            self._logger.error(f"Template {state.template_id} not found for session {token}")
            await transport.emit(ServerEvent.ERROR, {"message": TEMPLATE_MISSING_MESSAGE})
            return

        if template.mode == TemplateMode.INQUIRY:
            await self.process_inquiry_turn(transport, token, state, template)
            return

        if state.awaiting_intro_response:
            await self._begin_after_intro(transport, token, state)
            return

        question = state.current_question
        if question is None:
            await self.end_session(transport, token)
            return

        latest = state.latest_candidate_input
        knowledge = await self._retrieve_for_turn(token, state.template_id, question.text, latest)

        context = TurnContext(
            question_text=question.text,
            rubric=question.rubric,
            conversation=state.recent_transcript,
            latest_candidate_input=latest,
            followups_used=state.followups_used_current,
            max_followups=question.max_followups,
            global_followup_limit=template.global_followup_limit,
            knowledge_chunks=knowledge,
            candidate_files_summary=state.candidate_files_summary,
        )
        decision = await self._controller.decide(context, session_token=token)
        decision = self._enforce_followup_budget(token, state, question, decision)

        self._record_decision(
            EvaluationDecision.from_decision(decision, session_id=state.session_id, question_id=question.id)
        )
        self._logger.info(
            f"Session {token} q{state.current_question_index} "
            f"followups={state.followups_used_current}/{question.max_followups}: {decision.next_action.value}"
        )

        knowledge_context = format_knowledge_context(knowledge)
        action = decision.next_action
        match action:
            case NextAction.ASK_FOLLOWUP:
                await self._ask_followup(transport, token, state, template, decision, knowledge_context)
            case NextAction.ADVANCE_QUESTION:
                await self._advance_question(transport, token)
            case NextAction.ANSWER_CANDIDATE_QUESTION:
                await self._answer_candidate_question(transport, token, state, template, decision, knowledge_context)
            case NextAction.HANDLE_META:
                await self._handle_meta(transport, token, state, template)
            case NextAction.END_INTERVIEW:
                await self.end_session(transport, token)
            case _:
                assert_never(action)

    async def process_inquiry_turn(
        self,
        transport: Transport,
        token: str,
        state: SessionState,
        template: InterviewTemplate,
    ) -> None:
        """Answer directly from knowledge and documents; there is no question state."""
        latest = state.latest_candidate_input
        chunks = await self._retrieve(token, state.template_id, latest, self._settings.rag_top_k) if latest else []
        if chunks:
            self._logger.info(f"[Inquiry] Retrieved {len(chunks)} knowledge chunks for {token}")

        system_prompt = self._interviewer.build_inquiry_system_prompt(
            template, chunks, state.candidate_files_summary
        )
        await self._stream_utterance(
            transport,
            token,
            state,
            self._interviewer.stream_inquiry_reply(system_prompt, state.recent_transcript),
            MessageType.META,
            INQUIRY_ERROR_MESSAGE,
            question_id=None,
        )

    def _enforce_followup_budget(
        self,
        token: str,
        state: SessionState,
        question: QuestionSnapshot,
        decision: ControllerDecision,
    ) -> ControllerDecision:
        if decision.next_action != NextAction.ASK_FOLLOWUP:
            return decision
        if state.followups_used_current < question.max_followups:
            return decision
        self._logger.info(
            f"Follow-up budget exhausted for session {token} question {question.id}; advancing instead"
        )
        return decision.model_copy(update={"next_action": NextAction.ADVANCE_QUESTION})

    async def _begin_after_intro(self, transport: Transport, token: str, state: SessionState) -> None:
        self._logger.info(f"Intro response received for session {token}; asking first question")
        await self._cache.update(token, awaiting_intro_response=False)

        await self._send_fixed(transport, token, state, INTRO_ACKNOWLEDGEMENT, MessageType.META, question_id=None)

        first = state.questions[0] if state.questions else None
        if first is None:
            await self.end_session(transport, token)
            return
        if self._intro_pause > 0:
            await asyncio.sleep(self._intro_pause)
        await self._send_fixed(transport, token, state, first.text, MessageType.FIXED_QUESTION, first.id)

    async def _ask_followup(
        self,
        transport: Transport,
        token: str,
        state: SessionState,
        template: InterviewTemplate,
        decision: ControllerDecision,
        knowledge_context: str | None,
    ) -> None:
        await self._cache.increment_followup(token)
        prompt = self._interviewer.build_action_prompt(
            NextAction.ASK_FOLLOWUP,
            decision.followup_question or DEFAULT_FOLLOWUP,
            decision.file_reference,
        )
        await self._stream_utterance(
            transport,
            token,
            state,
            self._interviewer.stream_reply(self._system_prompt(template, state, knowledge_context), prompt),
            MessageType.FOLLOWUP,
            STREAM_ERROR_MESSAGE,
            question_id=self._question_id(state),
        )

    async def _advance_question(self, transport: Transport, token: str) -> None:
        advanced = await self._cache.advance_question(token)
        if advanced is None:
            return

        next_question = advanced.current_question
        if next_question is None:
            await self.end_session(transport, token)
            return

        await transport.emit(
            ServerEvent.QUESTION_ADVANCED,
            {"index": advanced.current_question_index, "total": len(advanced.questions)},
        )
        self._logger.info(f"Session {token} advanced to question {advanced.current_question_index}")
        await self._send_fixed(
            transport, token, advanced, next_question.text, MessageType.FIXED_QUESTION, next_question.id
        )

    async def _answer_candidate_question(
        self,
        transport: Transport,
        token: str,
        state: SessionState,
        template: InterviewTemplate,
        decision: ControllerDecision,
        knowledge_context: str | None,
    ) -> None:
        if decision.detected_candidate_question:
            self._logger.info(
                f"Answering candidate question in session {token}: {decision.detected_candidate_question[:50]}"
            )
        answer = decision.kb_answer or KB_FALLBACK_ANSWER
        prompt = self._interviewer.build_action_prompt(NextAction.ANSWER_CANDIDATE_QUESTION, answer)
        await self._stream_utterance(
            transport,
            token,
            state,
            self._interviewer.stream_reply(self._system_prompt(template, state, knowledge_context), prompt),
            MessageType.KB_ANSWER,
            STREAM_ERROR_MESSAGE,
            question_id=self._question_id(state),
        )

    async def _handle_meta(
        self,
        transport: Transport,
        token: str,
        state: SessionState,
        template: InterviewTemplate,
    ) -> None:
        prompt = self._interviewer.build_action_prompt(NextAction.HANDLE_META, state.latest_candidate_input)
        await self._stream_utterance(
            transport,
            token,
            state,
            self._interviewer.stream_reply(self._system_prompt(template, state), prompt),
            MessageType.META,
            STREAM_ERROR_MESSAGE,
            question_id=self._question_id(state),
        )

    # ------------------------------------------------------------------
    # Output helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _question_id(state: SessionState) -> str | None:
        question = state.current_question
        return question.id if question else None

    def _system_prompt(
        self,
        template: InterviewTemplate,
        state: SessionState,
        knowledge_context: str | None = None,
    ) -> str:
        return self._interviewer.build_system_prompt(
            template.persona_prompt,
            template.tone_guidance,
            state.candidate_files_summary,
            knowledge_context,
        )

    async def _send_fixed(
        self,
        transport: Transport,
        token: str,
        state: SessionState,
        text: str,
        message_type: MessageType,
        question_id: str | None,
    ) -> None:
        """Send text verbatim as a single-token stream."""
        await transport.emit(ServerEvent.AI_MESSAGE_START)
        await transport.emit(ServerEvent.AI_MESSAGE_TOKEN, text)
        await transport.emit(ServerEvent.AI_MESSAGE_END, text)
        await self._cache.append_message(token, MessageRole.AI, text)
        await self._record_transcript(state.session_id, question_id, MessageRole.AI, text, message_type)

    async def _stream_utterance(
        self,
        transport: Transport,
        token: str,
        state: SessionState,
        chunks: AsyncIterator[str],
        message_type: MessageType,
        error_text: str,
        question_id: str | None,
    ) -> str:
        """
        Forward generated chunks as they arrive; always finishes with `ai_message_end`.

        A generation failure replaces whatever was streamed with `error_text`.
        """
        await transport.emit(ServerEvent.AI_MESSAGE_START)
        loop = asyncio.get_running_loop()
        started = loop.time()
        first_token_ms: float | None = None
        parts: list[str] = []

        try:
            async for chunk in chunks:
                if first_token_ms is None:
                    first_token_ms = (loop.time() - started) * 1000
                parts.append(chunk)
                await transport.emit(ServerEvent.AI_MESSAGE_TOKEN, chunk)
            message = "".join(parts).strip()
        except LLMError as e:
            self._logger.error(f"Response generation failed for session {token}: {e}")
            message = error_text
            await transport.emit(ServerEvent.AI_MESSAGE_TOKEN, message)
        except Exception:
            self._logger.exception(f"Response stream broke for session {token}")
            message = error_text
            await transport.emit(ServerEvent.AI_MESSAGE_TOKEN, message)

        if not message:
            self._logger.warning(f"Response model returned nothing for session {token}")
            message = error_text
            await transport.emit(ServerEvent.AI_MESSAGE_TOKEN, message)

        await transport.emit(ServerEvent.AI_MESSAGE_END, message)

        total_ms = (loop.time() - started) * 1000
        self._logger.info(
            f"Interviewer for {token}: first token {first_token_ms or 0:.0f}ms, "
            f"total {total_ms:.0f}ms, {len(message)} chars"
        )

        await self._cache.append_message(token, MessageRole.AI, message)
        await self._record_transcript(state.session_id, question_id, MessageRole.AI, message, message_type)
        return message

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    async def _retrieve_for_turn(
        self,
        token: str,
        template_id: str,
        question_text: str,
        latest: str,
    ) -> list[KnowledgeChunk]:
        if not latest:
            return []
        if is_likely_candidate_question(latest):
            query = extract_question_for_retrieval(latest)
            top_k = self._settings.rag_top_k_question
            self._logger.debug(f"[RAG] Candidate question detected, searching for: {query[:50]}")
        else:
            query = f"{question_text} {latest}"
            top_k = self._settings.rag_top_k
        return await self._retrieve(token, template_id, query, top_k)

    async def _retrieve(self, token: str, template_id: str, query: str, top_k: int) -> list[KnowledgeChunk]:
        if self._retriever is None:
            return []
        try:
            return await self._retriever.retrieve(template_id, query, top_k)
        except Exception as e:
            self._logger.error(f"Knowledge retrieval failed for session {token}: {e}")
            return []

    def _record_decision(self, decision: EvaluationDecision) -> None:
        if self._decision_sink is None:
            return
        task = asyncio.create_task(self._write_decision(decision))
        self._audit_tasks.add(task)
        task.add_done_callback(self._audit_tasks.discard)

    async def _write_decision(self, decision: EvaluationDecision) -> None:
        assert self._decision_sink is not None
        try:
            await self._decision_sink.record_decision(decision)
        except Exception as e:
            self._logger.error(f"Failed to record decision for session {decision.session_id}: {e}")

    async def _record_transcript(
        self,
        session_id: str,
        question_id: str | None,
        role: MessageRole,
        content: str,
        message_type: MessageType,
    ) -> None:
        if self._transcript_sink is None:
            return
        message = TranscriptMessage(
            session_id=session_id,
            question_id=question_id,
            role=role,
            content=content,
            message_type=message_type,
        )
        try:
            await self._transcript_sink.record_message(message)
        except Exception as e:
            self._logger.error(f"Failed to persist transcript message for session {session_id}: {e}")

    async def _record_addition(
        self,
        token: str,
        state: SessionState,
        question_id: str | None,
        addition: str,
    ) -> None:
        previous = next(
            (e for e in reversed(state.recent_transcript) if e.role == MessageRole.CANDIDATE),
            None,
        )
        if previous is None:
            await self._cache.append_message(token, MessageRole.CANDIDATE, addition)
            await self._record_transcript(
                state.session_id, question_id, MessageRole.CANDIDATE, addition, MessageType.ANSWER
            )
            return

        updated = f"{previous.content} {addition}"
        await self._cache.update_last_message(token, MessageRole.CANDIDATE, updated)
        self._logger.info(f"Appended addition for session {token}; answer is now {len(updated)} chars")

        if self._transcript_sink is None:
            return
        try:
            amended = await self._transcript_sink.append_to_last_candidate_message(
                state.session_id, question_id, addition
            )
        except Exception as e:
            self._logger.error(f"Failed to persist addition for session {state.session_id}: {e}")
            return
        if not amended:
            await self._record_transcript(
                state.session_id, question_id, MessageRole.CANDIDATE, addition, MessageType.ANSWER
            )

    def _schedule_invalidation(self, token: str) -> None:
        task = asyncio.create_task(self._invalidate_later(token))
        self._invalidation_tasks.add(task)
        task.add_done_callback(self._invalidation_tasks.discard)

    async def _invalidate_later(self, token: str) -> None:
        await asyncio.sleep(self._invalidate_grace)
        try:
            await self._cache.invalidate(token)
        except Exception as e:
            self._logger.error(f"Failed to invalidate session {token}: {e}")
        else:
            self._logger.debug(f"Session {token} evicted from cache")
