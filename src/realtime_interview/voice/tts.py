"""Streaming text-to-speech playback.

Audio is requested as a raw PCM16 byte stream and played while it arrives: a
small first chunk gets sound out quickly, larger chunks after that keep
playback smooth. Every chunk is scheduled to start exactly where the previous
one ends.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import numpy as np

from realtime_interview.config import Settings
from realtime_interview.voice.audio_io import AudioSink, ScheduledBuffer, pcm16_to_float32

logger = logging.getLogger(__name__)

# OpenAI-style voice names mapped to ElevenLabs voice ids.
VOICE_MAP: dict[str, str] = {
    "alloy": "pNInz6obpgDQGcFmaJgB",
    "echo": "EXAVITQu4vr4xnSDxMaL",
    "fable": "ErXwobaYiN019PkySvjV",
    "onyx": "VR6AewLTigWG4xSOukaG",
    "nova": "ThT5KcBeYPX3keUQqHPh",
    "shimmer": "AZnzlk1XvdvUeBnXmlld",
}


def resolve_voice_id(voice: str) -> str:
    return VOICE_MAP.get(voice, voice)


class TTSError(Exception):
    """Speech synthesis request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class TTSConfig:
    api_key: str = ""
    voice: str = "alloy"
    model_id: str = "eleven_flash_v2_5"
    output_format: str = "pcm_24000"
    base_url: str = "https://api.elevenlabs.io"
    sample_rate: int = 24000
    first_chunk_bytes: int = 2400
    chunk_bytes: int = 4800
    finish_grace: float = 0.5
    level_interval: float = 1 / 60

    @property
    def voice_id(self) -> str:
        return resolve_voice_id(self.voice)

    @classmethod
    def from_settings(cls, settings: Settings, voice: str | None = None) -> TTSConfig:
        return cls(
            api_key=settings.elevenlabs_api_key,
            voice=voice or settings.tts_voice,
            model_id=settings.tts_model,
            output_format=settings.tts_output_format,
        )


@dataclass
class TTSCallbacks:
    """Playback hooks. Called on the event loop; keep them quick and synchronous."""

    on_speaking_start: Callable[[], Any] | None = None
    on_speaking_end: Callable[[], Any] | None = None
    on_audio_level: Callable[[float], Any] | None = None
    on_error: Callable[[str], Any] | None = None


class PCMChunker:
    """Cuts a PCM16 byte stream into playable chunks without splitting a sample."""

    def __init__(self, first_chunk_bytes: int = 2400, chunk_bytes: int = 4800) -> None:
        self._size = first_chunk_bytes - first_chunk_bytes % 2
        self._next_size = chunk_bytes - chunk_bytes % 2
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[bytes]:
        self._buffer.extend(data)
        chunks: list[bytes] = []
        while len(self._buffer) >= self._size:
            chunks.append(bytes(self._buffer[: self._size]))
            del self._buffer[: self._size]
            self._size = self._next_size
        return chunks

    def flush(self) -> bytes:
        usable = len(self._buffer) - len(self._buffer) % 2
        tail = bytes(self._buffer[:usable])
        self._buffer.clear()
        return tail


class AudioLevelMeter:
    """Smoothed output level for UI animation: fast attack, slow decay."""

    def __init__(self) -> None:
        self.level = 0.0

    def update(self, raw: float) -> float:
        if raw > self.level:
            self.level = self.level * 0.3 + raw * 0.7
        else:
            self.level = self.level * 0.85 + raw * 0.15
        return self.level

    def fade(self) -> float:
        self.level *= 0.85
        if self.level < 0.01:
            self.level = 0.0
        return self.level


class StreamingTTSClient:
    """Speaks text through an `AudioSink`, cancellable at any point with `stop()`."""

    LEVEL_GAIN = 3.0

    def __init__(
        self,
        config: TTSConfig | None = None,
        sink: AudioSink | None = None,
        http_client: httpx.AsyncClient | None = None,
        callbacks: TTSCallbacks | None = None,
    ) -> None:
        if sink is None:
            raise ValueError("StreamingTTSClient needs an AudioSink")
        self.config = config or TTSConfig()
        self.callbacks = callbacks or TTSCallbacks()
        self._sink = sink
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))

        self._speaking = False
        self._ended = True
        self._generation = 0
        self._fetch_task: asyncio.Task[None] | None = None
        self._level_task: asyncio.Task[None] | None = None
        self._handles: list[ScheduledBuffer] = []
        self._scheduled_end = 0.0
        self._finished = asyncio.Event()
        self._meter = AudioLevelMeter()

    @property
    def speaking(self) -> bool:
        return self._speaking

    @property
    def scheduled_handles(self) -> list[ScheduledBuffer]:
        return list(self._handles)

    async def speak(self, text: str) -> None:
        """
        Synthesize `text` and play it, returning once playback has finished.

        Returns early, without raising, if `stop()` is called. Failures are
        reported through `on_error`.
        """
        text = (text or "").strip()
        if not text:
            return
        if self._speaking:
            self.stop()

        self._generation += 1
        generation = self._generation
        self._speaking = True
        self._ended = False
        self._handles = []
        self._scheduled_end = 0.0
        self._finished = asyncio.Event()

        logger.info(f"[TTS] Speaking {len(text)} chars with voice {self.config.voice}")
        self._fire(self.callbacks.on_speaking_start)
        self._start_level_monitor()

        fetch = asyncio.create_task(self._stream_audio(text))
        self._fetch_task = fetch
        try:
            await asyncio.wait({fetch})
            if fetch.cancelled() or generation != self._generation:
                return

            error = fetch.exception()
            if error is not None:
                message = error.message if isinstance(error, TTSError) else str(error) or "TTS failed"
                logger.error(f"[TTS] Error: {message}")
                self._fire(self.callbacks.on_error, message)
                self._finish_playback()
                return

            await self._wait_for_playback()
        except asyncio.CancelledError:
            if not fetch.done():
                fetch.cancel()
            if generation == self._generation:
                self.stop()
            raise
        if generation == self._generation:
            logger.info("[TTS] All audio finished playing")
            self._finish_playback()

    def stop(self) -> None:
        """Abort the fetch, silence everything scheduled, and release any waiter."""
        fetch, self._fetch_task = self._fetch_task, None
        if fetch is not None and not fetch.done():
            fetch.cancel()
        for handle in self._handles:
            self._sink.stop(handle)
        self._handles = []
        self._finished.set()
        self._finish_playback()

    async def aclose(self) -> None:
        self.stop()
        if self._level_task is not None and not self._level_task.done():
            self._level_task.cancel()
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream_audio(self, text: str) -> None:
        cfg = self.config
        url = f"{cfg.base_url}/v1/text-to-speech/{cfg.voice_id}/stream"
        params = {"output_format": cfg.output_format, "optimize_streaming_latency": 4}
        body = {
            "text": text,
            "model_id": cfg.model_id,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
                "style": 0,
                "use_speaker_boost": True,
            },
        }

        try:
            async with self._client.stream(
                "POST",
                url,
                params=params,
                headers={"xi-api-key": cfg.api_key, "Accept": "audio/pcm"},
                json=body,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise TTSError(f"TTS request failed: {response.status_code}", response.status_code)

                chunker = PCMChunker(cfg.first_chunk_bytes, cfg.chunk_bytes)
                first = True
                async for data in response.aiter_bytes():
                    for chunk in chunker.feed(data):
                        if first:
                            logger.debug(f"[TTS] First audio chunk ({len(chunk)} bytes)")
                            first = False
                        self._schedule_chunk(chunk)
                tail = chunker.flush()
                if tail:
                    self._schedule_chunk(tail)
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise TTSError(f"TTS request failed: {e}") from e

    def _schedule_chunk(self, chunk: bytes) -> None:
        samples = pcm16_to_float32(chunk)
        start_at = max(self._sink.current_time, self._scheduled_end)
        handle = self._sink.schedule(samples, start_at)
        self._handles.append(handle)
        self._scheduled_end = start_at + len(samples) / self.config.sample_rate

    async def _wait_for_playback(self) -> None:
        pending = [h for h in self._handles if not h.finished.is_set()]
        if not pending:
            return
        logger.debug(f"[TTS] Stream complete, waiting for {len(pending)} audio sources to finish")

        timeout = max(0.0, self._scheduled_end - self._sink.current_time) + self.config.finish_grace
        waiters = {
            asyncio.create_task(pending[-1].finished.wait()),
            asyncio.create_task(self._finished.wait()),
        }
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                task.cancel()
        if not done:
            logger.info("[TTS] Fallback timeout - finishing playback")

    def _finish_playback(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._speaking = False
        self._fetch_task = None
        self._fire(self.callbacks.on_speaking_end)

    # ------------------------------------------------------------------
    # Level meter
    # ------------------------------------------------------------------

    def _start_level_monitor(self) -> None:
        if self.callbacks.on_audio_level is None:
            return
        if self._level_task is not None and not self._level_task.done():
            return
        self._level_task = asyncio.create_task(self._monitor_level())

    async def _monitor_level(self) -> None:
        interval = self.config.level_interval
        while True:
            if self._speaking:
                level = self._meter.update(self._current_raw_level())
            else:
                level = self._meter.fade()
            self._fire(self.callbacks.on_audio_level, level)
            if not self._speaking and level == 0.0:
                return
            await asyncio.sleep(interval)

    def _current_raw_level(self) -> float:
        now = self._sink.current_time
        for handle in self._handles:
            if handle.start_at <= now < handle.end_at:
                offset = int((now - handle.start_at) * handle.sample_rate)
                window = handle.samples[offset : offset + int(self.config.level_interval * handle.sample_rate) + 1]
                if len(window) == 0:
                    return 0.0
                rms = math.sqrt(float(np.mean(np.square(window, dtype=np.float64))))
                return min(1.0, rms * self.LEVEL_GAIN)
        return 0.0

    @staticmethod
    def _fire(callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("[TTS] Callback failed")
