"""
Wire names and frame encoding shared by the server and client.

Every frame is one JSON text message: `{"event": <name>, "data": <payload>}`.
The names are a cross-process contract and must not change.
"""

from __future__ import annotations

import json
from typing import Any


class ServerEvent:
    """Events sent from the server to the client."""

    SESSION_STARTED = "session_started"
    AI_MESSAGE_START = "ai_message_start"
    AI_MESSAGE_TOKEN = "ai_message_token"
    AI_MESSAGE_END = "ai_message_end"
    QUESTION_ADVANCED = "question_advanced"
    INTERVIEW_ENDED = "interview_ended"
    FILE_READY = "file_ready"
    MESSAGE_RECEIVED = "message_received"
    TIME_WARNING = "time_warning"
    TIME_EXPIRED = "time_expired"
    ERROR = "error"


class ClientEvent:
    """Events sent from the client to the server."""

    CANDIDATE_TRANSCRIPT_FINAL = "candidate_transcript_final"
    CANDIDATE_TRANSCRIPT_PARTIAL = "candidate_transcript_partial"
    CANDIDATE_INTERRUPT = "candidate_interrupt"
    MIC_MUTED = "mic_muted"
    END_INTERVIEW = "end_interview"


class Heartbeat:
    """Application-level liveness frames, answered immediately."""

    PING = "ping"
    PONG = "pong"


class FrameError(ValueError):
    """Raised when an incoming frame is not a valid event envelope."""


def encode_frame(event: str, data: Any = None) -> str:
    frame: dict[str, Any] = {"event": event}
    if data is not None:
        frame["data"] = data
    return json.dumps(frame)


def decode_frame(raw: str | bytes) -> tuple[str, Any]:
    """
    Parse one frame.

    Args:
        raw: Text or binary websocket message.

    Returns:
        `(event, data)`; data is None when the frame carries no payload.

    Raises:
        FrameError: If the message is not a JSON object with a string `event`.
    """
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FrameError(f"frame is not JSON: {e}") from e
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise FrameError("frame has no event name")
    return frame["event"], frame.get("data")
