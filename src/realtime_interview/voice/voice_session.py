"""Voice session loop (glue layer).

This module connects:
mic -> STT -> socket client -> (server) -> socket client -> TTS -> speaker

It intentionally does NOT re-implement interview logic; the server decides
what is said, this only moves text and audio between the pieces.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from realtime_interview.transport.client import InterviewSocketClient
from realtime_interview.voice.speakable import to_speakable_text
from realtime_interview.voice.stt import RealtimeSTTClient, STTCallbacks
from realtime_interview.voice.tts import StreamingTTSClient, TTSCallbacks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoiceSessionConfig:
    tts_enabled: bool = True
    failsafe_unmute_seconds: float = 2.0
    max_spoken_chars: int | None = None


@dataclass
class VoiceUICallbacks:
    on_listening: Callable[[], Any] | None = None
    on_speech_start: Callable[[], Any] | None = None
    on_speech_stop: Callable[[], Any] | None = None
    on_ai_message: Callable[[str], Any] | None = None
    on_ai_speaking: Callable[[bool], Any] | None = None
    on_audio_level: Callable[[float], Any] | None = None
    on_mute_change: Callable[[bool], Any] | None = None
    on_error: Callable[[str], Any] | None = None


def _normalize(text: str) -> str:
    return " ".join(text.split())


class VoiceSession:
    def __init__(
        self,
        *,
        socket_client: InterviewSocketClient,
        stt: RealtimeSTTClient,
        tts: StreamingTTSClient | None = None,
        config: VoiceSessionConfig | None = None,
        ui: VoiceUICallbacks | None = None,
    ) -> None:
        self._socket = socket_client
        self._stt = stt
        self._tts = tts
        self._config = config or VoiceSessionConfig()
        self._ui = ui or VoiceUICallbacks()

        self._speech_queue: asyncio.Queue[str] = asyncio.Queue()
        self._queued: list[str] = []
        self._last_spoken = ""
        self._muted = False
        self._ended = asyncio.Event()

        self._speaker_task: asyncio.Task[None] | None = None
        self._failsafe_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

        self._install_socket_callbacks()
        if self._tts is not None:
            self._tts.callbacks = TTSCallbacks(
                on_speaking_start=self._on_speaking_start,
                on_speaking_end=self._on_speaking_end,
                on_audio_level=self._on_audio_level,
                on_error=self._on_tts_error,
            )

    @property
    def config(self) -> VoiceSessionConfig:
        return self._config

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def ended(self) -> bool:
        return self._ended.is_set()

    @property
    def pending_speech(self) -> list[str]:
        return list(self._queued)

    async def start(self, session_token: str, credential: str) -> None:
        """Connect the interview socket, then the recognizer."""
        await self._socket.connect(session_token)
        await self._stt.connect(
            credential,
            STTCallbacks(
                on_transcript=self._on_transcript,
                on_speech_start=self._ui.on_speech_start,
                on_speech_stop=self._ui.on_speech_stop,
                on_error=self._on_stt_error,
            ),
        )
        if self._speaker_task is None and self._tts_active:
            self._speaker_task = asyncio.create_task(self._speak_loop())
        logger.info("[VOICE] Session started")

    async def wait_until_ended(self) -> None:
        await self._ended.wait()

    async def close(self) -> None:
        await self._shutdown()
        await self._socket.disconnect()

    @property
    def _tts_active(self) -> bool:
        return self._tts is not None and self._config.tts_enabled

    # ------------------------------------------------------------------
    # Recognizer -> socket
    # ------------------------------------------------------------------

    async def _on_transcript(self, text: str, is_final: bool) -> None:
        if not is_final:
            await self._fire(self._ui.on_listening)
            return
        text = text.strip()
        if not text:
            return
        logger.info(f"[VOICE] Candidate segment: {text[:80]}")
        await self._socket.send_transcript(text)

    def _on_stt_error(self, message: str) -> None:
        if message:
            logger.warning(f"[VOICE] Recognizer: {message}")
        self._fire_sync(self._ui.on_error, message)

    # ------------------------------------------------------------------
    # Socket -> speech
    # ------------------------------------------------------------------

    def _install_socket_callbacks(self) -> None:
        cb = self._socket.callbacks
        cb.on_ai_message_end = self._chain(cb.on_ai_message_end, self._on_ai_message_end)
        cb.on_interview_ended = self._chain(cb.on_interview_ended, self._on_session_over)
        cb.on_time_expired = self._chain(cb.on_time_expired, self._on_session_over)

    async def _on_ai_message_end(self, message: str) -> None:
        await self._fire(self._ui.on_ai_message, message)
        if not self._tts_active or self._ended.is_set():
            return
        self.enqueue_speech(message)

    def enqueue_speech(self, message: str) -> bool:
        """Queue an interviewer message for playback; duplicates are dropped."""
        text = to_speakable_text(message, max_chars=self._config.max_spoken_chars)
        if not text:
            return False
        normalized = _normalize(text)
        if normalized == _normalize(self._last_spoken) or any(_normalize(q) == normalized for q in self._queued):
            logger.debug(f"[VOICE] Skipping duplicate: {normalized[:30]}")
            return False

        self._set_muted(True)
        self._queued.append(text)
        self._speech_queue.put_nowait(text)
        self._arm_failsafe()
        return True

    async def _speak_loop(self) -> None:
        assert self._tts is not None
        while True:
            text = await self._speech_queue.get()
            if text in self._queued:
                self._queued.remove(text)
            self._last_spoken = text
            logger.info(f"[VOICE] Speaking from queue: {text[:40]}")
            await self._tts.speak(text)

    def _on_speaking_start(self) -> None:
        self._fire_sync(self._ui.on_ai_speaking, True)

    def _on_speaking_end(self) -> None:
        self._fire_sync(self._ui.on_ai_speaking, False)
        if not self._queued:
            self._set_muted(False)

    def _on_audio_level(self, level: float) -> None:
        self._fire_sync(self._ui.on_audio_level, level)

    def _on_tts_error(self, message: str) -> None:
        logger.error(f"[VOICE] TTS error: {message}")
        self._clear_queue()
        self._set_muted(False)
        self._fire_sync(self._ui.on_error, message)

    async def _on_session_over(self, *_: Any) -> None:
        logger.info("[VOICE] Interview over, stopping audio")
        await self._shutdown()

    async def _shutdown(self) -> None:
        if self._ended.is_set():
            return
        self._ended.set()
        self._clear_queue()
        if self._tts is not None:
            self._tts.stop()
        for task in (self._speaker_task, self._failsafe_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._speaker_task = None
        self._failsafe_task = None
        await self._stt.disconnect()

    # ------------------------------------------------------------------
    # Mic muting
    # ------------------------------------------------------------------

    def _set_muted(self, muted: bool) -> None:
        if self._muted == muted:
            return
        self._muted = muted
        if muted:
            self._stt.mute()
        else:
            self._stt.unmute()
        self._fire_sync(self._ui.on_mute_change, muted)
        if not self._ended.is_set():
            task = asyncio.ensure_future(self._socket.send_mic_muted(muted))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    def _arm_failsafe(self) -> None:
        if self._failsafe_task is not None and not self._failsafe_task.done():
            self._failsafe_task.cancel()
        self._failsafe_task = asyncio.create_task(self._failsafe_unmute())

    async def _failsafe_unmute(self) -> None:
        # The mic must not stay muted if speech never starts.
        await asyncio.sleep(self._config.failsafe_unmute_seconds)
        speaking = self._tts is not None and self._tts.speaking
        if self._muted and not speaking and not self._queued:
            logger.info("[VOICE] Failsafe: forcing unmute")
            self._set_muted(False)

    def _clear_queue(self) -> None:
        self._queued.clear()
        while not self._speech_queue.empty():
            self._speech_queue.get_nowait()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @classmethod
    def _chain(cls, previous: Callable[..., Any] | None, handler: Callable[..., Any]) -> Callable[..., Any]:
        if previous is None:
            return handler

        async def chained(*args: Any) -> None:
            await cls._fire(previous, *args)
            await cls._fire(handler, *args)

        return chained

    @staticmethod
    async def _fire(callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    @staticmethod
    def _fire_sync(callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("[VOICE] UI callback failed")
