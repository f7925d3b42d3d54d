"""
Tests for the reconnecting websocket client.

Connections are in-memory fakes; a connector hands them out in order so each
test controls exactly when a reconnect succeeds.
"""

import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosed
from websockets.frames import Close

from realtime_interview.transport import (
    ClientCallbacks,
    ClientConfig,
    DisconnectReason,
    InterviewSocketClient,
    classify_close,
)
from realtime_interview.transport.client import (
    CONNECTION_LOST_MESSAGE,
    RECONNECT_FAILED_MESSAGE,
    SERVER_ENDED_MESSAGE,
)
from realtime_interview.transport.events import encode_frame


class FakeClientConnection:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def recv(self):
        item = await self._incoming.get()
        if isinstance(item, Close):
            self.closed = True
            raise ConnectionClosed(item, None)
        return item

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(message))

    async def close(self) -> None:
        if not self.closed:
            self._incoming.put_nowait(Close(1000, ""))
        self.closed = True

    def push(self, event: str, data=None) -> None:
        self._incoming.put_nowait(encode_frame(event, data))

    def drop(self, code: int = 1006, reason: str = "") -> None:
        self._incoming.put_nowait(Close(code, reason))

    def events(self) -> list[str]:
        return [frame["event"] for frame in self.sent]


class FakeConnector:
    """Hands out connections in order; every call after the first waits on `gate`."""

    def __init__(self, *connections: FakeClientConnection, fail_reconnects: bool = False) -> None:
        self.connections = list(connections)
        self.fail_reconnects = fail_reconnects
        self.urls: list[str] = []
        self.gate = asyncio.Event()

    async def __call__(self, url: str) -> FakeClientConnection:
        self.urls.append(url)
        if len(self.urls) > 1:
            if self.fail_reconnects:
                raise OSError("connection refused")
            await self.gate.wait()
        return self.connections.pop(0)


class Recorder:
    def __init__(self) -> None:
        self.errors: list[str] = []
        self.connection_changes: list[bool] = []
        self.reconnecting: list[int] = []
        self.restored = []
        self.messages: list[str] = []

    def callbacks(self) -> ClientCallbacks:
        return ClientCallbacks(
            on_error=self.errors.append,
            on_connection_change=self.connection_changes.append,
            on_reconnecting=self.reconnecting.append,
            on_state_restored=self.restored.append,
            on_ai_message_end=self.messages.append,
        )


async def wait_for(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def fast_config(**overrides) -> ClientConfig:
    values = {"url": "ws://test", "reconnect_delay": 0, "reconnect_delay_max": 0, "heartbeat_interval": 3600}
    values.update(overrides)
    return ClientConfig(**values)


@pytest.mark.parametrize(
    ("code", "reason", "expected"),
    [
        (1000, "", DisconnectReason.SERVER_DISCONNECT),
        (1001, "going away", DisconnectReason.SERVER_DISCONNECT),
        (4001, "Invalid session", DisconnectReason.SERVER_DISCONNECT),
        (1011, "keepalive ping timeout", DisconnectReason.PING_TIMEOUT),
        (1011, "internal error", DisconnectReason.TRANSPORT_CLOSE),
        (1006, "", DisconnectReason.TRANSPORT_CLOSE),
        (None, "", DisconnectReason.TRANSPORT_CLOSE),
    ],
)
def test_classify_close(code, reason, expected) -> None:
    assert classify_close(code, reason) == expected


def test_backoff_doubles_and_caps() -> None:
    client = InterviewSocketClient(ClientConfig(reconnect_delay=0.5, reconnect_delay_max=5.0))
    assert [client.backoff_delay(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_connect_passes_token_in_query() -> None:
    connector = FakeConnector(FakeClientConnection())
    client = InterviewSocketClient(fast_config(), connector=connector)

    await client.connect("abc 123")

    assert connector.urls == ["ws://test?sessionToken=abc%20123"]
    assert client.is_connected
    await client.disconnect()


@pytest.mark.asyncio
async def test_queued_events_flush_in_order_after_reconnect() -> None:
    first, second = FakeClientConnection(), FakeClientConnection()
    connector = FakeConnector(first, second)
    recorder = Recorder()
    client = InterviewSocketClient(fast_config(), recorder.callbacks(), connector)
    await client.connect("tok")

    await client.send_transcript("before drop")
    first.drop(1006)
    await wait_for(lambda: not client.is_connected)

    await client.send_transcript("queued one")
    await client.send_partial_transcript("queued two")
    assert [e for e, _ in client.queued_events] == ["candidate_transcript_final", "candidate_transcript_partial"]

    connector.gate.set()
    await wait_for(lambda: client.is_connected)
    await client.send_transcript("after reconnect")
    await wait_for(lambda: len(second.sent) == 3 and len(recorder.errors) == 2)

    assert first.events() == ["candidate_transcript_final"]
    assert [frame["data"].get("transcript") or frame["data"].get("partial") for frame in second.sent] == [
        "queued one",
        "queued two",
        "after reconnect",
    ]
    assert client.queued_events == []
    assert recorder.connection_changes == [True, False, True]
    assert recorder.errors == [CONNECTION_LOST_MESSAGE, ""]
    assert len(recorder.restored) == 1
    await client.disconnect()


@pytest.mark.asyncio
async def test_server_disconnect_does_not_reconnect() -> None:
    conn = FakeClientConnection()
    connector = FakeConnector(conn)
    recorder = Recorder()
    client = InterviewSocketClient(fast_config(), recorder.callbacks(), connector)
    await client.connect("tok")

    conn.drop(1000)
    await asyncio.wait_for(client.wait_closed(), timeout=1)

    assert len(connector.urls) == 1
    assert recorder.errors == [SERVER_ENDED_MESSAGE]
    assert recorder.reconnecting == []


@pytest.mark.asyncio
async def test_reconnect_gives_up_after_max_attempts() -> None:
    conn = FakeClientConnection()
    connector = FakeConnector(conn, fail_reconnects=True)
    recorder = Recorder()
    client = InterviewSocketClient(fast_config(max_reconnect_attempts=3), recorder.callbacks(), connector)
    await client.connect("tok")

    conn.drop(1006)
    await asyncio.wait_for(client.wait_closed(), timeout=1)

    assert len(connector.urls) == 4
    assert recorder.reconnecting == [1, 2, 3]
    assert recorder.errors[-1] == RECONNECT_FAILED_MESSAGE
    assert not client.is_connected


@pytest.mark.asyncio
async def test_intentional_disconnect_clears_recovery_state() -> None:
    conn = FakeClientConnection()
    client = InterviewSocketClient(fast_config(), connector=FakeConnector(conn))
    await client.connect("tok")
    conn.push("ai_message_end", "Hello there")
    await wait_for(lambda: client.get_reconnection_state().last_ai_message == "Hello there")

    await client.disconnect()

    assert conn.closed
    assert not client.is_connected
    assert client.get_reconnection_state().last_ai_message == ""


@pytest.mark.asyncio
async def test_inbound_events_update_reconnection_state() -> None:
    conn = FakeClientConnection()
    recorder = Recorder()
    advanced: list[tuple[int, int]] = []
    callbacks = recorder.callbacks()

    async def on_question_advanced(index: int, total: int) -> None:
        advanced.append((index, total))

    callbacks.on_question_advanced = on_question_advanced
    client = InterviewSocketClient(fast_config(), callbacks, FakeConnector(conn))
    await client.connect("tok")

    conn.push("session_started", {"sessionId": "s", "currentQuestionIndex": 2, "totalQuestions": 5})
    conn.push("question_advanced", {"index": 3, "total": 5})
    conn.push("ai_message_end", "Next question?")
    await wait_for(lambda: recorder.messages == ["Next question?"])

    state = client.get_reconnection_state()
    assert state.last_question_index == 3
    assert state.last_ai_message == "Next question?"
    assert advanced == [(3, 5)]
    await client.disconnect()


@pytest.mark.asyncio
async def test_error_frame_reaches_callback() -> None:
    conn = FakeClientConnection()
    recorder = Recorder()
    client = InterviewSocketClient(fast_config(), recorder.callbacks(), FakeConnector(conn))
    await client.connect("tok")

    conn.push("error", {"message": "Failed to process your response"})
    await wait_for(lambda: recorder.errors == ["Failed to process your response"])
    await client.disconnect()


@pytest.mark.asyncio
async def test_raising_callback_does_not_stop_the_reader() -> None:
    conn = FakeClientConnection()
    recorder = Recorder()
    callbacks = recorder.callbacks()

    def on_ai_message_token(token: str) -> None:
        raise RuntimeError("render failed")

    callbacks.on_ai_message_token = on_ai_message_token
    client = InterviewSocketClient(fast_config(), callbacks, FakeConnector(conn))
    await client.connect("tok")

    conn.push("ai_message_token", "Hel")
    conn.push("question_advanced", {"index": "not a number", "total": 5})
    conn.push("ai_message_end", "Hello")
    await wait_for(lambda: recorder.messages == ["Hello"])

    assert client.is_connected
    assert recorder.connection_changes == [True]
    assert recorder.errors == []
    await client.disconnect()
