"""
Tests for the session state cache and its in-memory backend.
"""

import json

import pytest

from realtime_interview.cache import CacheBackend, InMemoryCacheBackend, SessionCache, initialize_session_cache
from realtime_interview.cache.session_cache import FILES_SUMMARY_HEADER, session_key
from realtime_interview.orchestrator.schemas import (
    CandidateFile,
    InterviewTemplate,
    MessageRole,
    SessionStatus,
    TemplateQuestion,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def template() -> InterviewTemplate:
    return InterviewTemplate(
        id="tpl-1",
        name="Backend Engineer",
        questions=[
            TemplateQuestion(id="q2", question_text="Second?", order_index=1, max_followups=1),
            TemplateQuestion(id="q1", question_text="First?", order_index=0, rubric="Mentions Python"),
            TemplateQuestion(id="q3", question_text="Third?", order_index=2),
        ],
    )


@pytest.fixture
def cache() -> SessionCache:
    return SessionCache(InMemoryCacheBackend(), ttl_seconds=3600, window_size=10)


class TestInitialization:
    """Seeding a session from a template."""

    @pytest.mark.asyncio
    async def test_questions_are_snapshotted_in_order(self, cache: SessionCache, template: InterviewTemplate) -> None:
        state = await initialize_session_cache(cache, "tok", session_id="s-1", template=template)

        assert [q.id for q in state.questions] == ["q1", "q2", "q3"]
        assert state.current_question_index == 0
        assert state.followups_used_current == 0
        assert state.status == SessionStatus.IN_PROGRESS
        assert state.questions[0].rubric == "Mentions Python"
        assert await cache.get("tok") == state

    @pytest.mark.asyncio
    async def test_only_ready_files_enter_the_summary(self, cache: SessionCache, template: InterviewTemplate) -> None:
        files = [
            CandidateFile(filename="resume.pdf", extracted_text="Ten years of Python", status="ready"),
            CandidateFile(filename="draft.pdf", extracted_text="half done", status="pending"),
        ]
        state = await initialize_session_cache(
            cache, "tok", session_id="s-1", template=template, candidate_files=files
        )

        assert state.candidate_files_summary is not None
        assert state.candidate_files_summary.startswith(FILES_SUMMARY_HEADER)
        assert "**resume.pdf**" in state.candidate_files_summary
        assert "draft.pdf" not in state.candidate_files_summary

    @pytest.mark.asyncio
    async def test_record_uses_camel_case_keys(self, template: InterviewTemplate) -> None:
        backend = InMemoryCacheBackend()
        cache = SessionCache(backend)
        await initialize_session_cache(cache, "tok", session_id="s-1", template=template)

        raw = json.loads(await backend.get(session_key("tok")))
        assert raw["sessionId"] == "s-1"
        assert raw["currentQuestionIndex"] == 0
        assert raw["questions"][0]["maxFollowups"] == 2


class TestMutations:
    """Read-modify-write helpers."""

    @pytest.mark.asyncio
    async def test_transcript_window_is_bounded(self, template: InterviewTemplate) -> None:
        cache = SessionCache(InMemoryCacheBackend(), window_size=3)
        await initialize_session_cache(cache, "tok", session_id="s-1", template=template)

        for i in range(5):
            await cache.append_message("tok", MessageRole.CANDIDATE, f"message {i}")

        state = await cache.get("tok")
        assert [e.content for e in state.recent_transcript] == ["message 2", "message 3", "message 4"]

    @pytest.mark.asyncio
    async def test_advance_resets_followups_and_transcript(
        self, cache: SessionCache, template: InterviewTemplate
    ) -> None:
        await initialize_session_cache(cache, "tok", session_id="s-1", template=template)
        await cache.append_message("tok", MessageRole.AI, "First?")
        await cache.increment_followup("tok")
        await cache.increment_followup("tok")

        state = await cache.advance_question("tok")

        assert state.current_question_index == 1
        assert state.followups_used_current == 0
        assert state.recent_transcript == []
        assert state.current_question.id == "q2"

    @pytest.mark.asyncio
    async def test_get_is_idempotent(self, cache: SessionCache, template: InterviewTemplate) -> None:
        await initialize_session_cache(cache, "tok", session_id="s-1", template=template)
        first = await cache.get("tok")
        second = await cache.get("tok")
        assert first == second

    @pytest.mark.asyncio
    async def test_invalidate_removes_session(self, cache: SessionCache, template: InterviewTemplate) -> None:
        await initialize_session_cache(cache, "tok", session_id="s-1", template=template)
        await cache.invalidate("tok")
        assert await cache.get("tok") is None

    @pytest.mark.asyncio
    async def test_mutations_on_missing_session_return_none(self, cache: SessionCache) -> None:
        assert await cache.update("missing", pending_partial="x") is None
        assert await cache.append_message("missing", MessageRole.AI, "hi") is None
        assert await cache.advance_question("missing") is None
        assert await cache.increment_followup("missing") is None
        assert await cache.update_status("missing", SessionStatus.COMPLETED) is None

    @pytest.mark.asyncio
    async def test_update_last_message_targets_role(self, cache: SessionCache, template: InterviewTemplate) -> None:
        await initialize_session_cache(cache, "tok", session_id="s-1", template=template)
        await cache.append_message("tok", MessageRole.CANDIDATE, "I used Python")
        await cache.append_message("tok", MessageRole.AI, "Tell me more")

        state = await cache.update_last_message("tok", MessageRole.CANDIDATE, "I used Python and Go")

        assert state.recent_transcript[0].content == "I used Python and Go"
        assert state.recent_transcript[1].content == "Tell me more"
        assert state.latest_candidate_input == "I used Python and Go"

    @pytest.mark.asyncio
    async def test_append_files_summary_accumulates(self, cache: SessionCache, template: InterviewTemplate) -> None:
        await initialize_session_cache(cache, "tok", session_id="s-1", template=template)
        await cache.append_files_summary("tok", "a.txt", "alpha")
        state = await cache.append_files_summary("tok", "b.txt", "x" * 4000)

        summary = state.candidate_files_summary
        assert summary.startswith(FILES_SUMMARY_HEADER)
        assert summary.index("**a.txt**") < summary.index("**b.txt**")
        assert summary.endswith("...[truncated]")


class TestExpiry:
    """TTL handling in the in-memory backend."""

    @pytest.mark.asyncio
    async def test_session_expires_after_ttl(self, template: InterviewTemplate) -> None:
        clock = FakeClock()
        cache = SessionCache(InMemoryCacheBackend(clock=clock), ttl_seconds=60)
        await initialize_session_cache(cache, "tok", session_id="s-1", template=template)

        clock.now += 59
        assert await cache.get("tok") is not None
        clock.now += 2
        assert await cache.get("tok") is None

    @pytest.mark.asyncio
    async def test_every_write_refreshes_ttl(self, template: InterviewTemplate) -> None:
        clock = FakeClock()
        backend = InMemoryCacheBackend(clock=clock)
        cache = SessionCache(backend, ttl_seconds=60)
        await initialize_session_cache(cache, "tok", session_id="s-1", template=template)

        clock.now += 50
        await cache.increment_followup("tok")
        assert backend.ttl(session_key("tok")) == pytest.approx(60)

        clock.now += 50
        assert await cache.get("tok") is not None

    @pytest.mark.asyncio
    async def test_unreadable_record_reads_as_missing(self) -> None:
        backend = InMemoryCacheBackend()
        await backend.setex(session_key("tok"), 60, "not json")
        assert await SessionCache(backend).get("tok") is None


class TestBackendContract:
    def test_backend_without_key_listing_cannot_be_built(self) -> None:
        class NoKeysBackend(CacheBackend):
            async def get(self, key: str) -> str | None:
                return None

            async def setex(self, key: str, ttl_seconds: int, value: str) -> None:
                return None

            async def delete(self, key: str) -> None:
                return None

        with pytest.raises(TypeError, match="keys"):
            NoKeysBackend()  # type: ignore[abstract]

    @pytest.mark.asyncio
    async def test_in_memory_keys_filter_by_prefix(self) -> None:
        backend = InMemoryCacheBackend()
        await backend.setex("timer:a", 60, "1")
        await backend.setex("session:a", 60, "1")
        assert await backend.keys("timer:") == ["timer:a"]
