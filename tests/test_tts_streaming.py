"""
Tests for streamed speech playback and its cancellation.
"""

import asyncio

import httpx
import numpy as np
import pytest

from realtime_interview.config import Settings
from realtime_interview.voice.audio_io import ScheduledBuffer
from realtime_interview.voice.tts import (
    VOICE_MAP,
    AudioLevelMeter,
    PCMChunker,
    StreamingTTSClient,
    TTSCallbacks,
    TTSConfig,
    resolve_voice_id,
)


class FakeSink:
    def __init__(self, auto_finish: bool = True) -> None:
        self.now = 0.0
        self.auto_finish = auto_finish
        self.scheduled: list[ScheduledBuffer] = []

    @property
    def current_time(self) -> float:
        return self.now

    def schedule(self, samples: np.ndarray, start_at: float) -> ScheduledBuffer:
        handle = ScheduledBuffer(samples=samples, start_at=start_at, sample_rate=24000, id=len(self.scheduled) + 1)
        self.scheduled.append(handle)
        if self.auto_finish:
            handle.finished.set()
        return handle

    def stop(self, handle: ScheduledBuffer) -> None:
        handle.stopped = True
        handle.finished.set()

    async def wait_idle(self) -> None:
        for handle in self.scheduled:
            await handle.finished.wait()


class Hooks:
    def __init__(self) -> None:
        self.starts = 0
        self.ends = 0
        self.errors: list[str] = []

    def callbacks(self) -> TTSCallbacks:
        return TTSCallbacks(on_speaking_start=self._start, on_speaking_end=self._end, on_error=self.errors.append)

    def _start(self) -> None:
        self.starts += 1

    def _end(self) -> None:
        self.ends += 1


def pcm(n_bytes: int) -> bytes:
    return b"\x10\x00" * (n_bytes // 2)


async def hanging_body(first: bytes, release: asyncio.Event):
    yield first
    await release.wait()
    yield pcm(4800)


def make_client(handler, sink: FakeSink, hooks: Hooks, **config) -> StreamingTTSClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StreamingTTSClient(TTSConfig(api_key="xi-test", **config), sink=sink, http_client=http, callbacks=hooks.callbacks())


async def wait_for(predicate, attempts: int = 500) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class TestPlayback:
    @pytest.mark.asyncio
    async def test_small_first_chunk_then_gapless_larger_chunks(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=pcm(2400 + 4800 + 4800))

        sink = FakeSink()
        hooks = Hooks()
        tts = make_client(handler, sink, hooks)

        await tts.speak("Tell me about your last project.")

        assert [len(h.samples) for h in sink.scheduled] == [1200, 2400, 2400]
        assert [h.start_at for h in sink.scheduled] == pytest.approx([0.0, 0.05, 0.15])
        assert hooks.starts == 1 and hooks.ends == 1
        assert not tts.speaking

        request = seen[0]
        assert request.url.path == f"/v1/text-to-speech/{VOICE_MAP['alloy']}/stream"
        assert request.url.params["output_format"] == "pcm_24000"
        assert request.headers["xi-api-key"] == "xi-test"
        await tts.aclose()

    @pytest.mark.asyncio
    async def test_tail_is_flushed_and_scheduling_follows_the_clock(self) -> None:
        sink = FakeSink()
        sink.now = 1.0
        tts = make_client(lambda r: httpx.Response(200, content=pcm(2400 + 100)), sink, Hooks())

        await tts.speak("Hello.")

        assert [len(h.samples) for h in sink.scheduled] == [1200, 50]
        assert sink.scheduled[0].start_at == pytest.approx(1.0)
        assert sink.scheduled[1].start_at == pytest.approx(1.05)
        await tts.aclose()

    @pytest.mark.asyncio
    async def test_blank_text_is_a_no_op(self) -> None:
        hooks = Hooks()
        tts = make_client(lambda r: httpx.Response(500), FakeSink(), hooks)

        await tts.speak("   ")

        assert hooks.starts == 0 and hooks.ends == 0
        await tts.aclose()

    @pytest.mark.asyncio
    async def test_unfinished_playback_times_out(self) -> None:
        sink = FakeSink(auto_finish=False)
        hooks = Hooks()
        tts = make_client(lambda r: httpx.Response(200, content=pcm(2400)), sink, hooks, finish_grace=0.0)

        await asyncio.wait_for(tts.speak("Hello."), timeout=2)

        assert hooks.ends == 1
        assert not tts.speaking
        await tts.aclose()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_stop_mid_stream_silences_everything(self) -> None:
        release = asyncio.Event()
        sink = FakeSink(auto_finish=False)
        hooks = Hooks()
        tts = make_client(lambda r: httpx.Response(200, content=hanging_body(pcm(2400), release)), sink, hooks)

        task = asyncio.create_task(tts.speak("A long answer that is still streaming."))
        await wait_for(lambda: len(sink.scheduled) == 1)
        await asyncio.sleep(0.05)

        tts.stop()
        await asyncio.wait_for(task, timeout=1)

        assert all(h.stopped for h in sink.scheduled)
        assert hooks.ends == 1
        assert hooks.errors == []
        assert not tts.speaking
        assert tts.scheduled_handles == []
        await tts.aclose()

    @pytest.mark.asyncio
    async def test_stop_while_waiting_for_playback_releases_waiter(self) -> None:
        sink = FakeSink(auto_finish=False)
        hooks = Hooks()
        tts = make_client(lambda r: httpx.Response(200, content=pcm(2400 + 4800 * 9)), sink, hooks, finish_grace=10.0)

        task = asyncio.create_task(tts.speak("Hello."))
        await wait_for(lambda: len(sink.scheduled) == 10)
        await asyncio.sleep(0)

        tts.stop()
        await asyncio.wait_for(task, timeout=1)

        assert hooks.ends == 1
        await tts.aclose()

    @pytest.mark.asyncio
    async def test_cancelling_the_speaker_cancels_the_fetch(self) -> None:
        release = asyncio.Event()
        sink = FakeSink(auto_finish=False)
        hooks = Hooks()
        tts = make_client(lambda r: httpx.Response(200, content=hanging_body(pcm(2400), release)), sink, hooks)

        task = asyncio.create_task(tts.speak("An answer the caller gives up on."))
        await wait_for(lambda: len(sink.scheduled) == 1)
        fetch = tts._fetch_task
        assert fetch is not None

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await wait_for(fetch.done)

        assert fetch.cancelled()
        assert all(h.stopped for h in sink.scheduled)
        assert hooks.ends == 1
        assert not tts.speaking
        await tts.aclose()

    @pytest.mark.asyncio
    async def test_new_speak_supersedes_old_one(self) -> None:
        release = asyncio.Event()
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(200, content=hanging_body(pcm(2400), release))
            return httpx.Response(200, content=pcm(2400))

        sink = FakeSink()
        hooks = Hooks()
        tts = make_client(handler, sink, hooks)

        first = asyncio.create_task(tts.speak("First message."))
        await wait_for(lambda: len(sink.scheduled) == 1)
        await tts.speak("Second message.")
        await asyncio.wait_for(first, timeout=1)

        assert hooks.starts == 2
        assert hooks.ends == 2
        assert sink.scheduled[0].stopped
        assert not sink.scheduled[1].stopped
        await tts.aclose()

    @pytest.mark.asyncio
    async def test_http_error_reports_once(self) -> None:
        hooks = Hooks()
        sink = FakeSink()
        tts = make_client(lambda r: httpx.Response(401, text="unauthorized"), sink, hooks)

        await tts.speak("Hello.")

        assert hooks.errors == ["TTS request failed: 401"]
        assert hooks.ends == 1
        assert sink.scheduled == []
        await tts.aclose()


def test_client_requires_a_sink() -> None:
    with pytest.raises(ValueError):
        StreamingTTSClient(TTSConfig())


def test_chunker_never_splits_a_sample() -> None:
    chunker = PCMChunker(first_chunk_bytes=5, chunk_bytes=7)

    assert chunker.feed(b"\x01\x02\x03") == []
    assert chunker.feed(b"\x04\x05\x06\x07") == [b"\x01\x02\x03\x04"]
    assert chunker.feed(b"\x08\x09\x0a\x0b") == [b"\x05\x06\x07\x08\x09\x0a"]
    assert chunker.flush() == b""
    assert chunker.feed(b"\x01\x02\x03") == []
    assert chunker.flush() == b"\x01\x02"


def test_level_meter_attacks_fast_and_decays_slowly() -> None:
    meter = AudioLevelMeter()

    assert meter.update(1.0) == pytest.approx(0.7)
    assert meter.update(0.0) == pytest.approx(0.595)
    for _ in range(40):
        meter.fade()
    assert meter.level == 0.0


def test_voice_names_resolve_to_ids() -> None:
    assert resolve_voice_id("nova") == VOICE_MAP["nova"]
    assert resolve_voice_id("custom-voice-id") == "custom-voice-id"
    settings = Settings(_env_file=None, tts_voice="onyx", elevenlabs_api_key="xi")
    config = TTSConfig.from_settings(settings)
    assert config.voice_id == VOICE_MAP["onyx"]
    assert TTSConfig.from_settings(settings, voice="echo").voice_id == VOICE_MAP["echo"]
