"""
Resilient websocket client for the interview protocol.

Reconnects automatically with capped exponential backoff, queues outbound
events while disconnected and flushes them in order on reconnect, and keeps a
small `ReconnectionState` so a UI can resynchronize after a drop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import quote

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from realtime_interview.orchestrator.schemas import ReconnectionState, now_ms
from realtime_interview.transport.events import (
    ClientEvent,
    FrameError,
    Heartbeat,
    ServerEvent,
    decode_frame,
    encode_frame,
)

logger = logging.getLogger(__name__)

SERVER_ENDED_MESSAGE = "Session ended by server"
CONNECTION_LOST_MESSAGE = "Connection lost. Reconnecting..."
NETWORK_ERROR_MESSAGE = "Network error. Attempting to reconnect..."
RECONNECT_FAILED_MESSAGE = "Unable to reconnect. Please refresh the page."

Connector = Callable[[str], Awaitable[ClientConnection]]
Callback = Callable[..., Any]


class DisconnectReason(str, Enum):
    """Why a connection ended, in the vocabulary clients already understand."""

    SERVER_DISCONNECT = "io server disconnect"
    PING_TIMEOUT = "ping timeout"
    TRANSPORT_CLOSE = "transport close"
    TRANSPORT_ERROR = "transport error"
    CLIENT_DISCONNECT = "io client disconnect"


def classify_close(code: int | None, reason: str = "") -> DisconnectReason:
    """
    Map a websocket close to a disconnect reason.

    Normal closes and application (4xxx) codes mean the server ended the
    session on purpose; a 1011 keepalive close is a ping timeout; anything
    else is treated as a dropped transport.
    """
    if code is None:
        return DisconnectReason.TRANSPORT_CLOSE
    if code in (1000, 1001) or 4000 <= code < 5000:
        return DisconnectReason.SERVER_DISCONNECT
    if code == 1011 and "keepalive" in reason.lower():
        return DisconnectReason.PING_TIMEOUT
    return DisconnectReason.TRANSPORT_CLOSE


def classify_connection_closed(exc: ConnectionClosed) -> DisconnectReason:
    frame = exc.rcvd or exc.sent
    if frame is None:
        return DisconnectReason.TRANSPORT_CLOSE
    return classify_close(frame.code, frame.reason)


@dataclass
class ClientConfig:
    """Connection tuning for `InterviewSocketClient`."""

    url: str = "ws://localhost:3001"
    max_reconnect_attempts: int = 10
    reconnect_delay: float = 0.5
    reconnect_delay_max: float = 5.0
    connect_timeout: float = 10.0
    heartbeat_interval: float = 15.0
    heartbeat_stale_after: float = 60.0


@dataclass
class ClientCallbacks:
    """UI hooks; each may be a plain function or a coroutine function."""

    on_session_started: Callback | None = None
    on_ai_message_start: Callback | None = None
    on_ai_message_token: Callback | None = None
    on_ai_message_end: Callback | None = None
    on_question_advanced: Callback | None = None
    on_interview_ended: Callback | None = None
    on_file_ready: Callback | None = None
    on_message_received: Callback | None = None
    on_time_warning: Callback | None = None
    on_time_expired: Callback | None = None
    on_error: Callback | None = None
    on_connection_change: Callback | None = None
    on_reconnecting: Callback | None = None
    on_state_restored: Callback | None = None


class InterviewSocketClient:
    """
    Client side of the interview transport.

    The server is the source of truth; `ReconnectionState` is only the last
    server-confirmed facts this client saw.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        callbacks: ClientCallbacks | None = None,
        connector: Connector | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            config: Connection tuning; defaults match the server's expectations.
            callbacks: UI hooks.
            connector: Opens a websocket for a URL. Defaults to `websockets` connect.
        """
        self.config = config or ClientConfig()
        self.callbacks = callbacks or ClientCallbacks()
        self._connector: Connector = connector or connect

        self._token: str | None = None
        self._connection: ClientConnection | None = None
        self._queue: deque[tuple[str, Any]] = deque()
        self._flushing = False
        self._intentional_close = False
        self._reconnect_attempts = 0
        self._reconnection_state = ReconnectionState()

        self._reader_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._last_pong: float = 0.0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def queued_events(self) -> list[tuple[str, Any]]:
        return list(self._queue)

    @property
    def is_heartbeat_stale(self) -> bool:
        if not self._last_pong:
            return False
        return asyncio.get_running_loop().time() - self._last_pong > self.config.heartbeat_stale_after

    def get_reconnection_state(self) -> ReconnectionState:
        return self._reconnection_state.model_copy()

    def save_pending_transcript(self, transcript: str) -> None:
        self._reconnection_state.pending_transcript = transcript

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt `attempt` (1-based)."""
        return min(self.config.reconnect_delay * 2 ** (attempt - 1), self.config.reconnect_delay_max)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, session_token: str) -> None:
        """
        Open the first connection and start reading in the background.

        Raises:
            OSError, TimeoutError, InvalidHandshake: If the first attempt fails.
        """
        self._token = session_token
        self._intentional_close = False
        try:
            await self._open(first=True)
        except (OSError, TimeoutError, InvalidHandshake) as e:
            logger.error(f"WebSocket connection error: {e}")
            await self._fire(self.callbacks.on_connection_change, False)
            raise
        self._reader_task = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        """Close on purpose: no reconnect, queue and recovery state are cleared."""
        self._intentional_close = True
        self._stop_heartbeat()
        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                await connection.close()
            except ConnectionClosed:
                pass
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None
        self._queue.clear()
        self._reconnection_state = ReconnectionState()

    async def wait_closed(self) -> None:
        """Wait until the client stops for good (server disconnect, failed reconnect, or disconnect())."""
        if self._reader_task is not None:
            await asyncio.shield(self._reader_task)

    def _url(self) -> str:
        separator = "&" if "?" in self.config.url else "?"
        return f"{self.config.url}{separator}sessionToken={quote(self._token or '')}"

    async def _open(self, first: bool) -> None:
        connection = await asyncio.wait_for(self._connector(self._url()), timeout=self.config.connect_timeout)
        self._connection = connection
        self._reconnect_attempts = 0
        self._last_pong = asyncio.get_running_loop().time()
        logger.info(f"WebSocket {'connected' if first else 'reconnected'}")
        await self._fire(self.callbacks.on_connection_change, True)

        self._start_heartbeat()
        await self._flush_queue()

        if not first:
            logger.info("Restoring state after reconnect")
            await self._fire(self.callbacks.on_state_restored, self.get_reconnection_state())

    async def _run(self) -> None:
        while True:
            reason = await self._read_until_closed()
            self._connection = None
            self._stop_heartbeat()
            if self._intentional_close:
                return

            logger.info(f"WebSocket disconnected: {reason.value}")
            await self._fire(self.callbacks.on_connection_change, False)
            if reason == DisconnectReason.SERVER_DISCONNECT:
                await self._fire(self.callbacks.on_error, SERVER_ENDED_MESSAGE)
                return
            if reason == DisconnectReason.TRANSPORT_ERROR:
                await self._fire(self.callbacks.on_error, NETWORK_ERROR_MESSAGE)
            else:
                await self._fire(self.callbacks.on_error, CONNECTION_LOST_MESSAGE)

            if not await self._reconnect():
                return

    async def _read_until_closed(self) -> DisconnectReason:
        connection = self._connection
        if connection is None:
            return DisconnectReason.TRANSPORT_CLOSE
        try:
            while True:
                raw = await connection.recv()
                try:
                    await self._handle_frame(raw)
                except Exception:
                    logger.exception("Failed to handle server frame")
        except ConnectionClosed as e:
            if self._intentional_close:
                return DisconnectReason.CLIENT_DISCONNECT
            return classify_connection_closed(e)
        except OSError as e:
            logger.warning(f"WebSocket transport error: {e}")
            return DisconnectReason.TRANSPORT_ERROR

    async def _reconnect(self) -> bool:
        for attempt in range(1, self.config.max_reconnect_attempts + 1):
            self._reconnect_attempts = attempt
            logger.info(f"Reconnection attempt {attempt}/{self.config.max_reconnect_attempts}")
            await self._fire(self.callbacks.on_reconnecting, attempt)
            await asyncio.sleep(self.backoff_delay(attempt))
            if self._intentional_close:
                return False
            try:
                await self._open(first=False)
            except (OSError, TimeoutError, InvalidHandshake) as e:
                logger.warning(f"Reconnection attempt {attempt} failed: {e}")
                continue
            logger.info(f"WebSocket reconnected after {attempt} attempts")
            await self._fire(self.callbacks.on_error, "")
            return True

        logger.error("WebSocket reconnection failed after max attempts")
        await self._fire(self.callbacks.on_error, RECONNECT_FAILED_MESSAGE)
        return False

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat())

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            connection = self._connection
            if connection is None:
                continue
            try:
                await connection.send(encode_frame(Heartbeat.PING))
            except ConnectionClosed:
                continue
            if self.is_heartbeat_stale:
                # Liveness is only observed; the read loop decides when the connection is gone.
                logger.warning(f"Heartbeat timeout ({self.config.heartbeat_stale_after:.0f}s), connection may be stale")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _handle_frame(self, raw: str | bytes) -> None:
        try:
            event, data = decode_frame(raw)
        except FrameError as e:
            logger.warning(f"Ignoring malformed frame: {e}")
            return
        payload = data if isinstance(data, dict) else {}
        cb = self.callbacks

        match event:
            case Heartbeat.PONG:
                self._last_pong = asyncio.get_running_loop().time()
            case ServerEvent.SESSION_STARTED:
                self._reconnection_state.last_question_index = int(payload.get("currentQuestionIndex", 0))
                await self._fire(cb.on_session_started, payload)
            case ServerEvent.AI_MESSAGE_START:
                await self._fire(cb.on_ai_message_start)
            case ServerEvent.AI_MESSAGE_TOKEN:
                await self._fire(cb.on_ai_message_token, data if isinstance(data, str) else "")
            case ServerEvent.AI_MESSAGE_END:
                message = data if isinstance(data, str) else ""
                self._reconnection_state.last_ai_message = message
                await self._fire(cb.on_ai_message_end, message)
            case ServerEvent.QUESTION_ADVANCED:
                index = int(payload.get("index", 0))
                self._reconnection_state.last_question_index = index
                await self._fire(cb.on_question_advanced, index, int(payload.get("total", 0)))
            case ServerEvent.INTERVIEW_ENDED:
                self._stop_heartbeat()
                await self._fire(cb.on_interview_ended)
            case ServerEvent.FILE_READY:
                await self._fire(cb.on_file_ready, payload)
            case ServerEvent.MESSAGE_RECEIVED:
                await self._fire(cb.on_message_received, payload)
            case ServerEvent.TIME_WARNING:
                await self._fire(cb.on_time_warning, int(payload.get("remainingMs", 0)))
            case ServerEvent.TIME_EXPIRED:
                self._stop_heartbeat()
                await self._fire(cb.on_time_expired)
            case ServerEvent.ERROR:
                await self._fire(cb.on_error, str(payload.get("message", "")))
            case _:
                logger.debug(f"Ignoring unknown server event {event!r}")

    @staticmethod
    async def _fire(callback: Callback | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Client callback {getattr(callback, '__name__', callback)!r} failed")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_transcript(self, transcript: str, is_addition: bool = False) -> None:
        await self._emit(
            ClientEvent.CANDIDATE_TRANSCRIPT_FINAL,
            {"transcript": transcript, "timestamp": now_ms(), "isAddition": is_addition},
        )

    async def send_partial_transcript(self, partial: str) -> None:
        await self._emit(ClientEvent.CANDIDATE_TRANSCRIPT_PARTIAL, {"partial": partial})

    async def send_interrupt(self, partial_transcript: str) -> None:
        await self._emit(
            ClientEvent.CANDIDATE_INTERRUPT,
            {"transcript": partial_transcript, "timestamp": now_ms(), "wasInterrupted": True},
        )

    async def send_mic_muted(self, muted: bool) -> None:
        await self._emit(ClientEvent.MIC_MUTED, {"muted": muted})

    async def end_interview(self) -> None:
        await self._emit(ClientEvent.END_INTERVIEW, {})

    async def _emit(self, event: str, data: Any) -> None:
        connection = self._connection
        # Anything already queued must go first.
        if connection is None or self._flushing or self._queue:
            self._queue.append((event, data))
            return
        try:
            await connection.send(encode_frame(event, data))
        except ConnectionClosed:
            self._queue.append((event, data))

    async def _flush_queue(self) -> None:
        if not self._queue:
            return
        logger.info(f"Flushing {len(self._queue)} queued messages")
        self._flushing = True
        try:
            while self._queue:
                connection = self._connection
                if connection is None:
                    return
                event, data = self._queue[0]
                try:
                    await connection.send(encode_frame(event, data))
                except ConnectionClosed:
                    return
                self._queue.popleft()
        finally:
            self._flushing = False
