"""Line-oriented SSE framing.

``event:`` sets the type of the next event, each ``data:`` line carries one
complete JSON document, ``:`` lines are keep-alive comments and blank lines
separate events. Text may arrive split anywhere, so incomplete lines are held
until the next chunk.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamEvent:
    event_type: str
    data: Any


class SSEDecoder:
    def __init__(self) -> None:
        self._buffer = ""
        self._event_type = ""

    def feed(self, chunk: str) -> list[StreamEvent]:
        """Consume a chunk of text and return every event it completed."""
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events = []
        for line in lines:
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[StreamEvent]:
        """Process a trailing line left without a newline at end of stream."""
        if not self._buffer:
            return []
        line, self._buffer = self._buffer, ""
        event = self._process_line(line)
        return [event] if event is not None else []

    def _process_line(self, raw_line: str) -> StreamEvent | None:
        line = raw_line.strip()
        if not line:
            self._event_type = ""
            return None
        if line.startswith(":"):
            return None
        if line.startswith("event:"):
            self._event_type = line[len("event:"):].strip()
            return None
        if not line.startswith("data:"):
            logger.debug("Ignoring unknown SSE field: %r", line[:80])
            return None

        payload = line[len("data:"):].strip()
        event_type, self._event_type = self._event_type, ""
        if not payload:
            return None
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            logger.warning("Dropping malformed SSE data (%s): %s", exc, payload[:200])
            return None
        if not event_type and isinstance(data, dict):
            event_type = str(data.get("type") or "")
        if not event_type:
            logger.warning("Dropping SSE data without an event type: %s", payload[:200])
            return None
        return StreamEvent(event_type=event_type, data=data)
