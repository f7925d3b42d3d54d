"""
Session state cache.

Every operation is an independent read-modify-write round trip against the
backend: there is no in-process layer above it. Writes replace the whole
record and refresh its TTL. Concurrent writers to one token can lose updates
(last writer wins); each session is expected to have exactly one writer.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from realtime_interview.cache.backends import CacheBackend
from realtime_interview.orchestrator.schemas import (
    CandidateFile,
    InterviewTemplate,
    MessageRole,
    QuestionSnapshot,
    SessionState,
    SessionStatus,
    TranscriptEntry,
)

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_WINDOW_SIZE = 10
FILE_TEXT_LIMIT = 3000
FILES_SUMMARY_HEADER = (
    "### Candidate Uploaded Documents\n\n"
    "The candidate has shared the following documents:\n\n"
)


def session_key(token: str) -> str:
    return f"session:{token}"


def summarize_file_for_context(filename: str, text: str, max_length: int = FILE_TEXT_LIMIT) -> str:
    """Render one document as a `**name**:` block, truncating long text."""
    truncated = text[:max_length] + "...[truncated]" if len(text) > max_length else text
    return f"**{filename}**:\n{truncated}"


class SessionCache:
    """Keyed, TTL-bounded store holding one `SessionState` per token."""

    def __init__(
        self,
        backend: CacheBackend,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        window_size: int = DEFAULT_WINDOW_SIZE,
    ) -> None:
        self._backend = backend
        self._ttl = ttl_seconds
        self._window = window_size

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    @property
    def window_size(self) -> int:
        return self._window

    async def get(self, token: str) -> SessionState | None:
        raw = await self._backend.get(session_key(token))
        if raw is None:
            return None
        try:
            return SessionState.from_cache(raw)
        except ValidationError as e:
            logger.error(f"Discarding unreadable session record for {token}: {e}")
            return None

    async def set(self, token: str, state: SessionState) -> None:
        await self._backend.setex(session_key(token), self._ttl, state.to_cache())

    async def update(self, token: str, **changes: Any) -> SessionState | None:
        """
        Shallow-merge `changes` into the stored state and write it back.

        Not atomic: a concurrent writer between the read and the write is lost.

        Args:
            token: Session token.
            **changes: Field names (snake_case) and their new values.

        Returns:
            The written state, or None if the session is absent.
        """
        current = await self.get(token)
        if current is None:
            return None
        updated = current.model_copy(update=changes)
        await self.set(token, updated)
        return updated

    async def append_message(self, token: str, role: MessageRole, content: str) -> SessionState | None:
        state = await self.get(token)
        if state is None:
            return None
        state.recent_transcript.append(TranscriptEntry(role=role, content=content))
        if len(state.recent_transcript) > self._window:
            state.recent_transcript = state.recent_transcript[-self._window :]
        await self.set(token, state)
        return state

    async def advance_question(self, token: str) -> SessionState | None:
        state = await self.get(token)
        if state is None:
            return None
        state.current_question_index += 1
        state.followups_used_current = 0
        state.recent_transcript = []
        await self.set(token, state)
        return state

    async def increment_followup(self, token: str) -> SessionState | None:
        state = await self.get(token)
        if state is None:
            return None
        state.followups_used_current += 1
        await self.set(token, state)
        return state

    async def update_status(self, token: str, status: SessionStatus) -> SessionState | None:
        state = await self.get(token)
        if state is None:
            return None
        state.status = status
        await self.set(token, state)
        return state

    async def set_files_summary(self, token: str, summary: str) -> SessionState | None:
        state = await self.get(token)
        if state is None:
            return None
        state.candidate_files_summary = summary
        await self.set(token, state)
        return state

    async def append_files_summary(self, token: str, filename: str, text: str) -> SessionState | None:
        """Add one processed document to the accumulated summary."""
        state = await self.get(token)
        if state is None:
            logger.warning(f"Session not found in cache for token {token}; file summary dropped")
            return None
        block = summarize_file_for_context(filename, text)
        existing = state.candidate_files_summary or ""
        state.candidate_files_summary = f"{existing}\n\n{block}" if existing else f"{FILES_SUMMARY_HEADER}{block}"
        await self.set(token, state)
        return state

    async def update_last_message(self, token: str, role: MessageRole, content: str) -> SessionState | None:
        """Replace the content of the most recent entry spoken by `role`."""
        state = await self.get(token)
        if state is None:
            return None
        for entry in reversed(state.recent_transcript):
            if entry.role == role:
                entry.content = content
                break
        await self.set(token, state)
        return state

    async def invalidate(self, token: str) -> None:
        await self._backend.delete(session_key(token))


async def initialize_session_cache(
    cache: SessionCache,
    token: str,
    *,
    session_id: str,
    template: InterviewTemplate,
    candidate_files: Iterable[CandidateFile] = (),
) -> SessionState:
    """
    Seed the cache for a new session.

    Questions are snapshotted in `order_index` order. Documents that finished
    processing are folded into the files summary.

    Args:
        cache: Target session cache.
        token: Session token.
        session_id: Durable session identifier.
        template: Template supplying the question list.
        candidate_files: Documents uploaded before the session started.

    Returns:
        The stored initial state.
    """
    ordered = sorted(template.questions, key=lambda q: q.order_index)

    ready = [f for f in candidate_files if f.status == "ready" and f.extracted_text]
    files_summary: str | None = None
    if ready:
        blocks = [summarize_file_for_context(f.filename, f.extracted_text or "") for f in ready]
        files_summary = FILES_SUMMARY_HEADER + "\n\n".join(blocks)
        logger.info(f"Loaded {len(ready)} candidate files ({len(files_summary)} chars) for {token}")

    state = SessionState(
        session_id=session_id,
        template_id=template.id,
        current_question_index=0,
        followups_used_current=0,
        status=SessionStatus.IN_PROGRESS,
        questions=[
            QuestionSnapshot(
                id=q.id,
                text=q.question_text,
                rubric=q.rubric,
                max_followups=q.max_followups,
            )
            for q in ordered
        ],
        recent_transcript=[],
        candidate_files_summary=files_summary,
    )
    await cache.set(token, state)
    return state
