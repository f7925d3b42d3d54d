"""Speech-to-text over a realtime transcription socket.

Transcription is a pure perception channel: the session is configured with
server VAD and `create_response: false`, so the remote service only ever
reports speech boundaries and finalized segment transcripts. Deciding what to
say back is the orchestrator's job.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from realtime_interview.config import Settings, get_settings
from realtime_interview.voice.audio_io import (
    AudioSource,
    MicrophoneError,
    describe_microphone_error,
)
from realtime_interview.voice.preprocessing import CapturePreprocessor

logger = logging.getLogger(__name__)

NETWORK_ERROR_MESSAGE = "Network error connecting to voice service. Please check your internet connection."
RECONNECTING_MESSAGE = "Voice connection lost. Reconnecting..."
TERMINAL_MESSAGE = "Voice connection lost. Please refresh the page."

Connector = Callable[[str, dict[str, str]], Awaitable[ClientConnection]]
Callback = Callable[..., Any]

__all__ = [
    "EphemeralCredentialIssuer",
    "MicrophoneError",
    "RealtimeSTTClient",
    "STTCallbacks",
    "STTConfig",
    "SpeechServiceError",
    "describe_microphone_error",
    "describe_service_status",
]


class SpeechServiceError(Exception):
    """Remote speech service refused or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def describe_service_status(status_code: int) -> str:
    """Human-readable message for an HTTP failure from the speech service."""
    if status_code == 401:
        return "Voice service authentication failed. Please refresh the page and try again."
    if status_code == 403:
        return "Voice service access denied. API key may not have Realtime API access."
    if status_code == 429:
        return "Voice service rate limited. Please wait a moment and try again."
    if status_code >= 500:
        return "Voice service temporarily unavailable. Please try again in a few moments."
    return f"Voice service error ({status_code}). Please refresh and try again."


@dataclass(frozen=True)
class STTConfig:
    url: str = "wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview-2024-12-17"
    transcription_model: str = "whisper-1"
    vad_threshold: float = 0.5
    vad_prefix_padding_ms: int = 200
    vad_silence_duration_ms: int = 200
    sample_rate: int = 24000
    keepalive_interval: float = 25.0
    max_consecutive_reconnects: int = 3
    max_total_reconnects: int = 10
    reconnect_delay: float = 1.0
    reconnect_pause: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> STTConfig:
        return cls(
            url=settings.realtime_url,
            transcription_model=settings.transcription_model,
            vad_threshold=settings.vad_threshold,
            vad_prefix_padding_ms=settings.vad_prefix_padding_ms,
            vad_silence_duration_ms=settings.vad_silence_duration_ms,
        )


@dataclass
class STTCallbacks:
    on_transcript: Callback | None = None
    on_speech_start: Callback | None = None
    on_speech_stop: Callback | None = None
    on_connection_change: Callback | None = None
    on_error: Callback | None = None


class EphemeralCredentialIssuer:
    """Mints short-lived realtime credentials so the API key never leaves the server."""

    def __init__(self, settings: Settings | None = None, http_client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings or get_settings()
        self._client = http_client or httpx.AsyncClient(timeout=10.0)

    async def issue(self) -> str:
        """
        Request a credential for one realtime session.

        Returns:
            The client secret value.

        Raises:
            SpeechServiceError: On HTTP or network failure, or a malformed reply.
        """
        model = parse_qs(urlsplit(self.settings.realtime_url).query).get("model", [""])[0]
        try:
            response = await self._client.post(
                self.settings.realtime_sessions_url,
                headers={"Authorization": f"Bearer {self.settings.openai_api_key}"},
                json={"model": model, "modalities": ["text"]},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"[STT] Credential request failed with HTTP {status}")
            raise SpeechServiceError(describe_service_status(status), status) from e
        except httpx.RequestError as e:
            logger.error(f"[STT] Credential request failed: {e}")
            raise SpeechServiceError(NETWORK_ERROR_MESSAGE) from e

        secret = (response.json().get("client_secret") or {}).get("value")
        if not secret:
            raise SpeechServiceError("Voice service returned no credential")
        return secret

    async def close(self) -> None:
        await self._client.aclose()


async def _default_connector(url: str, headers: dict[str, str]) -> ClientConnection:
    return await connect(url, additional_headers=headers)


class RealtimeSTTClient:
    """
    Streams microphone audio to the realtime service and reports transcripts.

    Reconnection is bounded by two counters: consecutive attempts (reset by a
    successful reconnect) and lifetime attempts (never reset). Past either
    cap the client reports one terminal error and stays down.
    """

    def __init__(
        self,
        config: STTConfig | None = None,
        source: AudioSource | None = None,
        connector: Connector | None = None,
        preprocessor: CapturePreprocessor | None = None,
    ) -> None:
        self.config = config or STTConfig()
        self._source = source
        self._connector: Connector = connector or _default_connector
        self._preprocessor = preprocessor

        self._callbacks = STTCallbacks()
        self._credential: str | None = None
        self._connection: ClientConnection | None = None
        self._intentional_close = False
        self._muted = False
        self._terminal = False
        self._source_started = False

        self._consecutive_reconnects = 0
        self._total_reconnects = 0

        self._reader_task: asyncio.Task[None] | None = None
        self._recovery_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._pump_task: asyncio.Task[None] | None = None

    @property
    def connected(self) -> bool:
        return self._connection is not None

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def total_reconnects(self) -> int:
        return self._total_reconnects

    @property
    def consecutive_reconnects(self) -> int:
        return self._consecutive_reconnects

    async def connect(self, credential: str, callbacks: STTCallbacks | None = None) -> None:
        """
        Open the realtime session and start streaming audio.

        Args:
            credential: Short-lived credential from `EphemeralCredentialIssuer`.
            callbacks: Transcript, speech-boundary and error hooks.

        Raises:
            SpeechServiceError: If the service rejects or cannot be reached.
            MicrophoneError: If the capture device cannot be opened.
        """
        self._credential = credential
        if callbacks is not None:
            self._callbacks = callbacks
        self._intentional_close = False

        if self._source is not None and not self._source_started:
            await self._source.start()
            self._source_started = True

        await self._open()

        if self._source is not None and self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    async def disconnect(self) -> None:
        logger.info("[STT] Disconnecting...")
        self._intentional_close = True
        self._stop_keepalive()

        current = asyncio.current_task()
        for task in (self._pump_task, self._recovery_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._pump_task = None
        self._recovery_task = None
        self._reader_task = None

        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                await connection.close()
            except ConnectionClosed:
                pass

        if self._source is not None and self._source_started:
            await self._source.stop()
            self._source_started = False

        # No credential means no reconnect can ever start again.
        self._credential = None
        await self._fire(self._callbacks.on_connection_change, False)

    def mute(self) -> None:
        self._muted = True
        logger.info("[STT] Muting audio")
        if self._source is not None:
            self._source.mute()

    def unmute(self) -> None:
        self._muted = False
        logger.info("[STT] Unmuting audio")
        if self._source is not None:
            self._source.unmute()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _open(self) -> None:
        headers = {
            "Authorization": f"Bearer {self._credential}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            connection = await self._connector(self.config.url, headers)
        except InvalidStatus as e:
            status = e.response.status_code
            raise SpeechServiceError(describe_service_status(status), status) from e
        except (OSError, TimeoutError, InvalidHandshake) as e:
            raise SpeechServiceError(NETWORK_ERROR_MESSAGE) from e

        self._connection = connection
        logger.info("[STT] Connected")
        await self._fire(self._callbacks.on_connection_change, True)

        await self._send(self._session_update())
        logger.info(
            f"[STT] Session configured: VAD {self.config.vad_threshold}, "
            f"silence {self.config.vad_silence_duration_ms}ms, prefix {self.config.vad_prefix_padding_ms}ms"
        )
        self._start_keepalive()
        self._reader_task = asyncio.create_task(self._read(connection))

    def _session_update(self) -> dict[str, Any]:
        return {
            "type": "session.update",
            "session": {
                "modalities": ["text"],
                "input_audio_transcription": {"model": self.config.transcription_model},
                "turn_detection": {
                    "type": "server_vad",
                    "threshold": self.config.vad_threshold,
                    "prefix_padding_ms": self.config.vad_prefix_padding_ms,
                    "silence_duration_ms": self.config.vad_silence_duration_ms,
                    "create_response": False,
                },
            },
        }

    async def _read(self, connection: ClientConnection) -> None:
        try:
            async for raw in connection:
                await self._handle_event(raw)
        except ConnectionClosed as e:
            logger.info(f"[STT] Connection closed: {e}")
        finally:
            if self._connection is connection:
                self._connection = None
                self._stop_keepalive()
                logger.info(f"[STT] Connection closed, intentional: {self._intentional_close}")
                if not self._intentional_close:
                    await self._fire(self._callbacks.on_connection_change, False)
                    self._recovery_task = asyncio.create_task(self._recover())

    async def _recover(self) -> None:
        while not self._intentional_close and not self._terminal:
            if not self._can_reconnect():
                self._terminal = True
                logger.warning("[STT] Reconnect limit reached, giving up")
                await self._fire(self._callbacks.on_error, TERMINAL_MESSAGE)
                return

            self._consecutive_reconnects += 1
            self._total_reconnects += 1
            logger.info(
                f"[STT] Will attempt reconnect {self._consecutive_reconnects}/"
                f"{self.config.max_consecutive_reconnects} (total: {self._total_reconnects})"
            )
            await self._fire(self._callbacks.on_error, RECONNECTING_MESSAGE)
            await asyncio.sleep(self.config.reconnect_delay * self._consecutive_reconnects)
            await asyncio.sleep(self.config.reconnect_pause)
            if self._intentional_close or not self._credential:
                return

            try:
                await self._open()
            except SpeechServiceError as e:
                logger.warning(f"[STT] Reconnection failed: {e.message}")
                continue

            logger.info("[STT] Reconnection successful")
            self._consecutive_reconnects = 0
            await self._fire(self._callbacks.on_error, "")
            return

    def _can_reconnect(self) -> bool:
        return (
            self._credential is not None
            and self._consecutive_reconnects < self.config.max_consecutive_reconnects
            and self._total_reconnects < self.config.max_total_reconnects
        )

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def _handle_event(self, raw: str | bytes) -> None:
        try:
            event = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"[STT] Parse error: {e}")
            return
        if not isinstance(event, dict):
            return

        cb = self._callbacks
        event_type = event.get("type")
        match event_type:
            case "conversation.item.input_audio_transcription.completed":
                transcript = event.get("transcript") or ""
                if transcript:
                    logger.info(f"[STT] Segment complete: {transcript}")
                    await self._fire(cb.on_transcript, transcript, True)
            case "conversation.item.input_audio_transcription.failed":
                logger.warning(f"[STT] Transcription failed: {event.get('error')}")
            case "input_audio_buffer.speech_started":
                logger.debug("[STT] Speech detected")
                await self._fire(cb.on_speech_start)
                # Empty non-final transcript is the "listening" pulse.
                await self._fire(cb.on_transcript, "", False)
            case "input_audio_buffer.speech_stopped":
                logger.debug("[STT] Speech ended, awaiting transcript")
                await self._fire(cb.on_speech_stop)
            case "error":
                error = event.get("error") or {}
                message = error.get("message") if isinstance(error, dict) else None
                logger.error(f"[STT] API error: {error}")
                await self._fire(cb.on_error, message or "Transcription error")
            case "session.created" | "session.updated":
                logger.debug(f"[STT] {event_type}")
            case _:
                logger.debug(f"[STT] Event: {event_type}")

    # ------------------------------------------------------------------
    # Outbound audio
    # ------------------------------------------------------------------

    async def _pump(self) -> None:
        assert self._source is not None
        while True:
            block = await self._source.read()
            if self._muted or self._connection is None:
                continue
            if self._preprocessor is not None:
                block = self._preprocessor.process(block)
            audio = base64.b64encode(block.astype("<i2").tobytes()).decode("ascii")
            await self._send({"type": "input_audio_buffer.append", "audio": audio})

    def _start_keepalive(self) -> None:
        self._stop_keepalive()
        self._keepalive_task = asyncio.create_task(self._keepalive())

    def _stop_keepalive(self) -> None:
        if self._keepalive_task is not None and not self._keepalive_task.done():
            if self._keepalive_task is not asyncio.current_task():
                self._keepalive_task.cancel()
        self._keepalive_task = None

    async def _keepalive(self) -> None:
        # The service drops idle sessions after ~30s, e.g. while the interviewer is speaking.
        while True:
            await asyncio.sleep(self.config.keepalive_interval)
            if self._connection is None:
                continue
            await self._send({"type": "input_audio_buffer.clear"})

    async def _send(self, event: dict[str, Any]) -> None:
        connection = self._connection
        if connection is None:
            return
        try:
            await connection.send(json.dumps(event))
        except ConnectionClosed as e:
            logger.warning(f"[STT] Send of {event.get('type')} failed: {e}")

    @staticmethod
    async def _fire(callback: Callback | None, *args: Any) -> None:
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
