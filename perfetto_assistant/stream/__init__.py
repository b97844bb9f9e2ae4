"""Resilient client for the backend's Server-Sent-Events analysis stream."""

from perfetto_assistant.stream.connection import (
    ConnectionState,
    StreamConnectionManager,
    StatusUpdate,
    backoff_delay_ms,
)
from perfetto_assistant.stream.sse import SSEDecoder, StreamEvent

__all__ = [
    "ConnectionState",
    "SSEDecoder",
    "StatusUpdate",
    "StreamConnectionManager",
    "StreamEvent",
    "backoff_delay_ms",
]
