"""
Transport module providing the bidirectional event channel.

Contains the wire event names and the reconnecting client. The server lives
in `transport.server` and is imported from there, since it depends on the
orchestrator, which itself emits the events defined here.
"""

from realtime_interview.transport.client import (
    ClientCallbacks,
    ClientConfig,
    DisconnectReason,
    InterviewSocketClient,
    classify_close,
)
from realtime_interview.transport.events import ClientEvent, Heartbeat, ServerEvent, decode_frame, encode_frame

__all__ = [
    "ClientCallbacks",
    "ClientConfig",
    "ClientEvent",
    "DisconnectReason",
    "Heartbeat",
    "InterviewSocketClient",
    "ServerEvent",
    "classify_close",
    "decode_frame",
    "encode_frame",
]
