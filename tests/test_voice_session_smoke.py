import asyncio

import pytest

from realtime_interview.transport.client import ClientCallbacks
from realtime_interview.voice.stt import STTCallbacks
from realtime_interview.voice.tts import TTSCallbacks
from realtime_interview.voice.voice_session import VoiceSession, VoiceSessionConfig, VoiceUICallbacks


class FakeSocketClient:
    def __init__(self, callbacks: ClientCallbacks | None = None) -> None:
        self.callbacks = callbacks or ClientCallbacks()
        self.transcripts: list[str] = []
        self.mic_muted: list[bool] = []
        self.connected_with: str | None = None
        self.disconnected = False

    async def connect(self, session_token: str) -> None:
        self.connected_with = session_token

    async def disconnect(self) -> None:
        self.disconnected = True

    async def send_transcript(self, text: str, is_addition: bool = False) -> None:
        self.transcripts.append(text)

    async def send_mic_muted(self, muted: bool) -> None:
        self.mic_muted.append(muted)


class FakeSTT:
    def __init__(self) -> None:
        self.callbacks = STTCallbacks()
        self.credential: str | None = None
        self.muted = False
        self.disconnected = False

    async def connect(self, credential: str, callbacks: STTCallbacks | None = None) -> None:
        self.credential = credential
        self.callbacks = callbacks or STTCallbacks()

    async def disconnect(self) -> None:
        self.disconnected = True

    def mute(self) -> None:
        self.muted = True

    def unmute(self) -> None:
        self.muted = False


class FakeTTS:
    """Plays until `finish()` or `stop()`; can fail instead."""

    def __init__(self) -> None:
        self.callbacks = TTSCallbacks()
        self.spoken: list[str] = []
        self.speaking = False
        self.stops = 0
        self.fail_with: str | None = None
        self._done = asyncio.Event()

    async def speak(self, text: str) -> None:
        self.spoken.append(text)
        if self.fail_with is not None:
            self.callbacks.on_speaking_start()
            self.callbacks.on_error(self.fail_with)
            self.callbacks.on_speaking_end()
            return
        self._done = asyncio.Event()
        self.speaking = True
        self.callbacks.on_speaking_start()
        await self._done.wait()
        self.speaking = False
        self.callbacks.on_speaking_end()

    def finish(self) -> None:
        self._done.set()

    def stop(self) -> None:
        self.stops += 1
        self._done.set()


async def settle() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


async def started_session(**kwargs):
    socket = FakeSocketClient(kwargs.pop("callbacks", None))
    stt = FakeSTT()
    tts = kwargs.pop("tts", FakeTTS())
    session = VoiceSession(socket_client=socket, stt=stt, tts=tts, **kwargs)  # type: ignore[arg-type]
    await session.start("tok", "ek_1")
    return session, socket, stt, tts


@pytest.mark.asyncio
async def test_start_connects_socket_then_recognizer():
    session, socket, stt, _ = await started_session()

    assert socket.connected_with == "tok"
    assert stt.credential == "ek_1"
    await session.close()
    assert socket.disconnected and stt.disconnected


@pytest.mark.asyncio
async def test_final_segments_are_sent_and_partials_only_pulse():
    pulses: list[bool] = []
    session, socket, stt, _ = await started_session(ui=VoiceUICallbacks(on_listening=lambda: pulses.append(True)))

    await stt.callbacks.on_transcript("", False)
    await stt.callbacks.on_transcript("  I led the migration.  ", True)
    await stt.callbacks.on_transcript("   ", True)

    assert socket.transcripts == ["I led the migration."]
    assert pulses == [True]
    await session.close()


@pytest.mark.asyncio
async def test_mic_is_muted_while_interviewer_speaks():
    mute_changes: list[bool] = []
    session, socket, stt, tts = await started_session(ui=VoiceUICallbacks(on_mute_change=mute_changes.append))

    await socket.callbacks.on_ai_message_end("**Great.** What did you learn?")
    await settle()

    assert tts.spoken == ["Great. What did you learn?"]
    assert session.muted and stt.muted
    assert socket.mic_muted == [True]

    tts.finish()
    await settle()

    assert not session.muted and not stt.muted
    assert socket.mic_muted == [True, False]
    assert mute_changes == [True, False]
    await session.close()


@pytest.mark.asyncio
async def test_duplicate_messages_are_spoken_once():
    session, socket, _, tts = await started_session()

    assert session.enqueue_speech("Tell me about yourself.")
    assert not session.enqueue_speech("Tell me  about yourself.")
    await settle()
    tts.finish()
    await settle()

    assert not session.enqueue_speech("Tell me about yourself.")
    assert tts.spoken == ["Tell me about yourself."]
    assert not session.enqueue_speech("```\ncode only\n```")
    await session.close()


@pytest.mark.asyncio
async def test_tts_failure_clears_queue_and_unmutes():
    tts = FakeTTS()
    tts.fail_with = "TTS request failed: 401"
    errors: list[str] = []
    session, socket, stt, _ = await started_session(tts=tts, ui=VoiceUICallbacks(on_error=errors.append))

    session.enqueue_speech("First.")
    session.enqueue_speech("Second.")
    await settle()

    assert errors[0] == "TTS request failed: 401"
    assert not session.muted and not stt.muted
    assert session.pending_speech == []
    await session.close()


@pytest.mark.asyncio
async def test_failsafe_unmutes_when_speech_never_starts():
    class SilentTTS(FakeTTS):
        async def speak(self, text: str) -> None:
            self.spoken.append(text)
            await asyncio.Event().wait()

    session, _, stt, _ = await started_session(
        tts=SilentTTS(), config=VoiceSessionConfig(failsafe_unmute_seconds=0.01)
    )

    session.enqueue_speech("Are you there?")
    assert session.muted
    await asyncio.sleep(0.05)

    assert not session.muted and not stt.muted
    await session.close()


@pytest.mark.asyncio
async def test_tts_disabled_only_shows_messages():
    shown: list[str] = []
    session, socket, stt, tts = await started_session(
        config=VoiceSessionConfig(tts_enabled=False), ui=VoiceUICallbacks(on_ai_message=shown.append)
    )

    await socket.callbacks.on_ai_message_end("Welcome.")
    await settle()

    assert shown == ["Welcome."]
    assert tts.spoken == []
    assert not session.muted
    await session.close()


@pytest.mark.asyncio
async def test_interview_end_stops_audio_and_keeps_existing_callback():
    ended: list[object] = []
    session, socket, stt, tts = await started_session(callbacks=ClientCallbacks(on_interview_ended=ended.append))

    session.enqueue_speech("Thanks for your time.")
    await settle()
    await socket.callbacks.on_interview_ended({"reason": "completed"})

    assert ended == [{"reason": "completed"}]
    assert session.ended
    assert tts.stops == 1
    assert stt.disconnected
    assert session.pending_speech == []
    await session.wait_until_ended()
    await session.close()
