"""Audio capture + playback capabilities.

This module is intentionally "dumb hardware I/O": it knows nothing about the
interview, the transport, or the speech services.

It provides:
- `AudioSource`: a mic that yields int16 mono blocks and can be muted
- `AudioSink`: a playback timeline that buffers are scheduled onto
- sounddevice-backed implementations of both
- PCM16 <-> float32 helpers
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np

logger = logging.getLogger(__name__)

PERMISSION_DENIED_MESSAGE = "Microphone permission denied. Please allow microphone access and try again."
NOT_FOUND_MESSAGE = "No microphone found. Please connect a microphone and try again."
IN_USE_MESSAGE = "Microphone is in use by another application. Please close other apps using the microphone."


class MicrophoneError(RuntimeError):
    """Capture device could not be opened."""


def describe_microphone_error(error: BaseException) -> str:
    """Map a capture-device failure to a message a candidate can act on."""
    if isinstance(error, PermissionError):
        return PERMISSION_DENIED_MESSAGE
    text = str(error).lower()
    if "permission" in text or "access denied" in text or "not allowed" in text:
        return PERMISSION_DENIED_MESSAGE
    if "no input device" in text or "invalid device" in text or "no default input" in text or "not found" in text:
        return NOT_FOUND_MESSAGE
    if "unavailable" in text or "busy" in text or "in use" in text:
        return IN_USE_MESSAGE
    return f"Microphone error: {error}"


def pcm16_to_float32(samples: np.ndarray | bytes) -> np.ndarray:
    """Convert little-endian PCM16 (array or raw bytes) to float32 in [-1, 1)."""
    if isinstance(samples, (bytes, bytearray, memoryview)):
        samples = np.frombuffer(samples, dtype="<i2")
    return samples.astype(np.float32) / 32768.0


def float32_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float32 samples to int16, clipping to the valid range."""
    clipped = np.clip(samples, -1.0, 1.0)
    return (clipped * 32767.0).astype(np.int16)


@dataclass(frozen=True)
class AudioIOConfig:
    sample_rate: int = 24000
    channels: int = 1
    block_ms: int = 100
    input_device: int | str | None = None
    output_device: int | str | None = None

    @property
    def block_frames(self) -> int:
        return self.sample_rate * self.block_ms // 1000


@dataclass(eq=False)
class ScheduledBuffer:
    """A float32 buffer placed on the sink timeline."""

    samples: np.ndarray
    start_at: float
    sample_rate: int
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    stopped: bool = False
    id: int = 0

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate

    @property
    def end_at(self) -> float:
        return self.start_at + self.duration


class AudioSource(Protocol):
    async def start(self) -> None: ...

    async def read(self) -> np.ndarray: ...

    async def stop(self) -> None: ...

    def mute(self) -> None: ...

    def unmute(self) -> None: ...


class AudioSink(Protocol):
    @property
    def current_time(self) -> float: ...

    def schedule(self, samples: np.ndarray, start_at: float) -> ScheduledBuffer: ...

    def stop(self, handle: ScheduledBuffer) -> None: ...

    async def wait_idle(self) -> None: ...


def _require_sounddevice():
    try:
        import sounddevice as sd  # type: ignore

        return sd
    except Exception as e:  # pragma: no cover
        raise RuntimeError(
            "sounddevice is required for voice mode. Install Python deps with: pip install -e '.[voice]'. "
            "If you see 'PortAudio library not found', install PortAudio (Debian/Ubuntu: sudo apt-get install portaudio19-dev)."
        ) from e


class SoundDeviceSource:
    """Microphone capture delivering fixed-size int16 mono blocks."""

    def __init__(self, config: AudioIOConfig | None = None) -> None:
        self._config = config or AudioIOConfig()
        self._stream = None
        self._queue: asyncio.Queue[np.ndarray] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._muted = False

    @property
    def config(self) -> AudioIOConfig:
        return self._config

    @property
    def muted(self) -> bool:
        return self._muted

    async def start(self) -> None:
        """Open the input stream.

        Raises:
            MicrophoneError: If the device cannot be opened.
        """
        sd = self._require_sounddevice()
        self._loop = asyncio.get_running_loop()

        def callback(indata, frames, time, status):  # noqa: ANN001
            if status:
                logger.debug(f"[VOICE] Input status: {status}")
            if self._muted or self._loop is None:
                return
            self._loop.call_soon_threadsafe(self._queue.put_nowait, indata[:, 0].copy())

        try:
            self._stream = sd.InputStream(
                samplerate=self._config.sample_rate,
                channels=self._config.channels,
                dtype="int16",
                blocksize=self._config.block_frames,
                device=self._config.input_device,
                callback=callback,
            )
            await asyncio.to_thread(self._stream.start)
        except (sd.PortAudioError, ValueError, PermissionError) as e:
            self._stream = None
            raise MicrophoneError(describe_microphone_error(e)) from e
        logger.info(f"[VOICE] Microphone open at {self._config.sample_rate} Hz")

    async def read(self) -> np.ndarray:
        return await self._queue.get()

    async def stop(self) -> None:
        if self._stream is None:
            return
        stream = self._stream
        self._stream = None
        await asyncio.to_thread(stream.stop)
        stream.close()

    def mute(self) -> None:
        self._muted = True

    def unmute(self) -> None:
        self._muted = False

    @staticmethod
    def _require_sounddevice():
        return _require_sounddevice()


class SoundDeviceSink:
    """
    Speaker output with a sample-accurate playback timeline.

    Buffers are mixed in the output callback at their scheduled sample
    offsets, so back-to-back buffers play without gaps.
    """

    def __init__(self, config: AudioIOConfig | None = None) -> None:
        self._config = config or AudioIOConfig()
        self._stream = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()
        self._position = 0
        self._pending: list[tuple[int, ScheduledBuffer]] = []
        self._ids = itertools.count(1)

    @property
    def config(self) -> AudioIOConfig:
        return self._config

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._position / self._config.sample_rate

    async def start(self) -> None:
        sd = _require_sounddevice()
        self._loop = asyncio.get_running_loop()
        self._stream = sd.OutputStream(
            samplerate=self._config.sample_rate,
            channels=self._config.channels,
            dtype="float32",
            blocksize=self._config.block_frames // 4,
            device=self._config.output_device,
            callback=self._callback,
        )
        await asyncio.to_thread(self._stream.start)

    async def close(self) -> None:
        if self._stream is None:
            return
        stream = self._stream
        self._stream = None
        await asyncio.to_thread(stream.stop)
        stream.close()
        with self._lock:
            pending = [buf for _, buf in self._pending]
            self._pending.clear()
        for buf in pending:
            buf.finished.set()

    def schedule(self, samples: np.ndarray, start_at: float) -> ScheduledBuffer:
        handle = ScheduledBuffer(
            samples=np.asarray(samples, dtype=np.float32),
            start_at=start_at,
            sample_rate=self._config.sample_rate,
            id=next(self._ids),
        )
        start_frame = int(round(start_at * self._config.sample_rate))
        with self._lock:
            self._pending.append((start_frame, handle))
        return handle

    def stop(self, handle: ScheduledBuffer) -> None:
        with self._lock:
            self._pending = [(start, buf) for start, buf in self._pending if buf is not handle]
        handle.stopped = True
        handle.finished.set()

    async def wait_idle(self) -> None:
        with self._lock:
            pending = [buf for _, buf in self._pending]
        for buf in pending:
            await buf.finished.wait()

    def _callback(self, outdata, frames, time, status):  # noqa: ANN001
        if status:
            logger.debug(f"[VOICE] Output status: {status}")
        mix = np.zeros(frames, dtype=np.float32)
        done: list[ScheduledBuffer] = []
        with self._lock:
            window_start = self._position
            window_end = window_start + frames
            remaining: list[tuple[int, ScheduledBuffer]] = []
            for start, buf in self._pending:
                end = start + len(buf.samples)
                lo = max(start, window_start)
                hi = min(end, window_end)
                if hi > lo:
                    mix[lo - window_start : hi - window_start] += buf.samples[lo - start : hi - start]
                if end <= window_end:
                    done.append(buf)
                else:
                    remaining.append((start, buf))
            self._pending = remaining
            self._position = window_end

        outdata[:] = np.clip(mix, -1.0, 1.0).reshape(-1, 1).repeat(outdata.shape[1], axis=1)
        if done and self._loop is not None:
            for buf in done:
                self._loop.call_soon_threadsafe(buf.finished.set)
