"""
Websocket server for live interview sessions.

Each connection authenticates with the `sessionToken` query parameter. All
work that writes session state for a token goes through one worker queue, so
turns are processed strictly in arrival order and never overlap.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from realtime_interview.cache.backends import StoreUnavailableError
from realtime_interview.config import Settings, get_settings
from realtime_interview.orchestrator.interview_orchestrator import InterviewOrchestrator
from realtime_interview.orchestrator.schemas import SessionStatus
from realtime_interview.orchestrator.session_timer import SessionTimer, pending_timer_tokens
from realtime_interview.transport.events import (
    ClientEvent,
    FrameError,
    Heartbeat,
    ServerEvent,
    decode_frame,
    encode_frame,
)

logger = logging.getLogger(__name__)

CLOSE_SESSION_REJECTED = 4001
CLOSE_REPLACED = 4002

MISSING_TOKEN = "Missing session token"
INVALID_SESSION = "Invalid session"
SESSION_ENDED = "Session already ended"

Job = Callable[[], Awaitable[Any]]


class SocketTransport:
    """`Transport` over one websocket connection."""

    def __init__(self, connection: ServerConnection) -> None:
        self._connection = connection

    @property
    def connection(self) -> ServerConnection:
        return self._connection

    async def emit(self, event: str, payload: Any = None) -> None:
        try:
            await self._connection.send(encode_frame(event, payload))
        except ConnectionClosed:
            logger.debug(f"Dropped {event}: connection closed")


class LiveSession:
    """
    Server-side handle for one session token.

    Survives reconnects: the transport is rebound when the client comes back,
    and anything the orchestrator emits goes to whichever connection is
    current. Events emitted while no client is connected are dropped.
    """

    def __init__(self, token: str, timer: SessionTimer) -> None:
        self.token = token
        self.timer = timer
        self.transport: SocketTransport | None = None
        self.abandon_task: asyncio.Task[None] | None = None
        self.queue: asyncio.Queue[Job] = asyncio.Queue()
        self.worker: asyncio.Task[None] | None = None

    async def emit(self, event: str, payload: Any = None) -> None:
        if self.transport is None:
            logger.debug(f"Dropped {event} for {self.token}: no client connected")
            return
        await self.transport.emit(event, payload)

    def submit(self, job: Job) -> None:
        self.queue.put_nowait(job)

    def cancel_abandon(self) -> None:
        if self.abandon_task is not None and not self.abandon_task.done():
            self.abandon_task.cancel()
        self.abandon_task = None


class InterviewServer:
    """Accepts client connections and feeds their events to the orchestrator."""

    def __init__(
        self,
        orchestrator: InterviewOrchestrator,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize the server.

        Args:
            orchestrator: Turn orchestrator; its cache also backs the timers.
            settings: Application settings (uses cached settings if None).
        """
        self._orchestrator = orchestrator
        self._cache = orchestrator.cache
        self._settings = settings or get_settings()
        self._sessions: dict[str, LiveSession] = {}

    @property
    def sessions(self) -> dict[str, LiveSession]:
        return self._sessions

    async def serve(self, host: str | None = None, port: int | None = None) -> None:
        host = host or self._settings.ws_host
        port = port or self._settings.ws_port
        await self.restore_timers()
        async with serve(
            self.handle_connection,
            host,
            port,
            ping_interval=self._settings.ws_ping_interval,
            ping_timeout=self._settings.ws_ping_timeout,
        ) as server:
            logger.info(f"Interview server listening on ws://{host}:{port}")
            await server.serve_forever()

    async def handle_connection(self, connection: ServerConnection) -> None:
        token = self._token_from(connection)
        if not token:
            await self._reject(connection, MISSING_TOKEN)
            return

        state = await self._cache.get(token)
        if state is None:
            await self._reject(connection, INVALID_SESSION)
            return
        if state.status != SessionStatus.IN_PROGRESS:
            await self._reject(connection, SESSION_ENDED)
            return

        live = self._sessions.get(token)
        resumed = live is not None
        if live is None:
            live = self._open_live(token)
        live.cancel_abandon()

        previous = live.transport
        transport = SocketTransport(connection)
        live.transport = transport
        if previous is not None and previous.connection is not connection:
            logger.info(f"Session {token} replaced an existing connection")
            await previous.connection.close(code=CLOSE_REPLACED, reason="Replaced by a newer connection")

        logger.info(f"Client connected to session {token} (resumed={resumed})")

        try:
            time_limit = await self._orchestrator.resolve_time_limit(state)
            await self._orchestrator.start_session(live, token, time_limit)
            if not live.timer.running:
                await self._start_timer(live, time_limit)

            async for raw in connection:
                await self._dispatch(live, transport, raw)
        except ConnectionClosed as e:
            logger.info(f"Connection for session {token} closed: {e}")
        except StoreUnavailableError as e:
            logger.error(f"Session store unavailable for {token}: {e}")
            await transport.emit(ServerEvent.ERROR, {"message": "Session storage unavailable"})
        finally:
            await self._on_disconnect(live, transport)

    async def notify_file_ready(self, token: str, file_id: str, filename: str, extracted_text: str) -> None:
        """Add a processed upload to the session context and tell the client."""
        live = self._sessions.get(token)
        if live is None:
            await self._orchestrator.add_candidate_file(None, token, file_id, filename, extracted_text)
            return
        live.submit(
            functools.partial(self._orchestrator.add_candidate_file, live, token, file_id, filename, extracted_text)
        )

    async def restore_timers(self) -> None:
        """Resume timers recorded by a previous server process."""
        tokens = await pending_timer_tokens(self._cache.backend)
        logger.info(f"[Timer] Restoring {len(tokens)} session timers")
        for token in tokens:
            state = await self._cache.get(token)
            if state is None or state.status != SessionStatus.IN_PROGRESS:
                await SessionTimer(self._cache.backend, token).stop()
                continue
            live = self._sessions.get(token) or self._open_live(token)
            await live.timer.restore(*self._timer_callbacks(live))
            if live.transport is None:
                self._schedule_abandon(live)

    async def close(self) -> None:
        for live in list(self._sessions.values()):
            await live.timer.stop()
            self._close_live(live)
        await self._orchestrator.aclose()

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def _dispatch(self, live: LiveSession, transport: SocketTransport, raw: str | bytes) -> None:
        try:
            event, data = decode_frame(raw)
        except FrameError as e:
            logger.warning(f"Ignoring malformed frame from {live.token}: {e}")
            return
        if not isinstance(data, dict):
            data = {}

        token = live.token
        match event:
            case Heartbeat.PING:
                await transport.emit(Heartbeat.PONG)
            case ClientEvent.CANDIDATE_TRANSCRIPT_FINAL:
                transcript = str(data.get("transcript") or "")
                logger.debug(f"Final transcript for {token} (addition={bool(data.get('isAddition'))})")
                live.submit(
                    functools.partial(
                        self._orchestrator.handle_candidate_input,
                        live,
                        token,
                        transcript,
                        is_addition=bool(data.get("isAddition")),
                    )
                )
            case ClientEvent.CANDIDATE_INTERRUPT:
                transcript = str(data.get("transcript") or "")
                live.submit(
                    functools.partial(
                        self._orchestrator.handle_candidate_input,
                        live,
                        token,
                        transcript,
                        was_interrupted=bool(data.get("wasInterrupted")),
                    )
                )
            case ClientEvent.CANDIDATE_TRANSCRIPT_PARTIAL:
                live.submit(functools.partial(self._orchestrator.handle_partial, token, str(data.get("partial") or "")))
            case ClientEvent.MIC_MUTED:
                logger.debug(f"Mic muted for {token}: {bool(data.get('muted'))}")
            case ClientEvent.END_INTERVIEW:
                logger.info(f"Client ended interview {token}")
                await live.timer.stop()
                live.submit(functools.partial(self._orchestrator.end_session, live, token))
            case _:
                logger.debug(f"Ignoring unknown event {event!r} from {token}")

    async def _run_worker(self, live: LiveSession) -> None:
        while True:
            job = await live.queue.get()
            try:
                await job()
            except StoreUnavailableError as e:
                logger.error(f"Session store unavailable while processing {live.token}: {e}")
                await live.emit(ServerEvent.ERROR, {"message": "Session storage unavailable"})
            except Exception:
                logger.exception(f"Turn processing failed for session {live.token}")
                await live.emit(ServerEvent.ERROR, {"message": "Failed to process your response"})
            else:
                await self._stop_timer_if_finished(live)
            finally:
                live.queue.task_done()

    async def _stop_timer_if_finished(self, live: LiveSession) -> None:
        state = await self._cache.get(live.token)
        if state is None or state.status != SessionStatus.IN_PROGRESS:
            await live.timer.stop()

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def _open_live(self, token: str) -> LiveSession:
        live = LiveSession(token, SessionTimer(self._cache.backend, token))
        live.worker = asyncio.create_task(self._run_worker(live))
        self._sessions[token] = live
        return live

    def _close_live(self, live: LiveSession) -> None:
        live.cancel_abandon()
        if live.worker is not None and not live.worker.done():
            live.worker.cancel()
        if self._sessions.get(live.token) is live:
            del self._sessions[live.token]

    def _timer_callbacks(
        self, live: LiveSession
    ) -> tuple[Callable[[int], Awaitable[None]], Callable[[], Awaitable[None]]]:
        async def on_warning(remaining_ms: int) -> None:
            await live.emit(ServerEvent.TIME_WARNING, {"remainingMs": remaining_ms})

        async def on_expired() -> None:
            logger.info(f"Session time expired: {live.token}")
            await live.emit(ServerEvent.TIME_EXPIRED)
            live.submit(functools.partial(self._orchestrator.end_session, live, live.token))

        return on_warning, on_expired

    async def _start_timer(self, live: LiveSession, time_limit_minutes: int) -> None:
        on_warning, on_expired = self._timer_callbacks(live)
        if await live.timer.restore(on_warning, on_expired):
            return
        await live.timer.start(time_limit_minutes, self._settings.time_warning_minutes, on_warning, on_expired)

    async def _on_disconnect(self, live: LiveSession, transport: SocketTransport) -> None:
        if live.transport is not transport:
            # A newer connection already owns the session.
            return
        live.transport = None
        logger.info(f"Client disconnected from session {live.token}")

        try:
            state = await self._cache.get(live.token)
        except StoreUnavailableError as e:
            logger.error(f"Could not read session {live.token} on disconnect: {e}")
            state = None
        if state is None or state.status != SessionStatus.IN_PROGRESS:
            await live.queue.join()
            self._close_live(live)
            return
        self._schedule_abandon(live)

    def _schedule_abandon(self, live: LiveSession) -> None:
        live.cancel_abandon()
        live.abandon_task = asyncio.create_task(self._abandon_after_grace(live))

    async def _abandon_after_grace(self, live: LiveSession) -> None:
        await asyncio.sleep(self._settings.reconnect_grace_seconds)
        await live.queue.join()
        if live.transport is not None:
            return
        await self._orchestrator.mark_abandoned(live.token)
        await live.timer.stop()
        live.abandon_task = None
        self._close_live(live)

    @staticmethod
    def _token_from(connection: ServerConnection) -> str | None:
        query = parse_qs(urlsplit(connection.request.path).query)
        values = query.get("sessionToken")
        return values[0] if values and values[0] else None

    @staticmethod
    async def _reject(connection: ServerConnection, message: str) -> None:
        logger.info(f"Rejecting connection: {message}")
        try:
            await connection.send(encode_frame(ServerEvent.ERROR, {"message": message}))
            await connection.close(code=CLOSE_SESSION_REJECTED, reason=message)
        except ConnectionClosed:
            pass
