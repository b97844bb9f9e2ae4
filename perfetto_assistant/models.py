"""Conversation data model: messages, sessions and the sessions index."""

from __future__ import annotations

import logging
import random
import string
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from perfetto_assistant.envelope.widgets import ChartSpec, MetricSpec, TableResult

logger = logging.getLogger(__name__)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageKind(str, Enum):
    STANDARD = "standard"
    # Rolling in-progress status line; replaced by the next status or result.
    PLACEHOLDER = "placeholder"
    # Transient "reconnecting" line owned by the stream client.
    CONNECTION_STATUS = "connection_status"


@dataclass(frozen=True)
class ReportLink:
    url: str

    def to_dict(self) -> dict:
        return {"type": "report", "url": self.url}


Attachment = TableResult | ChartSpec | MetricSpec | ReportLink

_ATTACHMENT_TYPES = {
    "table": TableResult,
    "chart": ChartSpec,
    "metric": MetricSpec,
}


def attachment_from_dict(data: Any) -> Attachment | None:
    if not isinstance(data, dict):
        return None
    kind = data.get("type")
    if kind == "report":
        return ReportLink(url=str(data.get("url", "")))
    cls = _ATTACHMENT_TYPES.get(kind)
    if cls is None:
        return None
    return cls.from_dict(data)


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_id(prefix: str = "msg") -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}-{now_ms()}-{suffix}"


@dataclass(frozen=True)
class Message:
    id: str
    role: MessageRole
    content: str
    timestamp: int
    attachment: Attachment | None = None
    kind: MessageKind = MessageKind.STANDARD

    @property
    def is_placeholder(self) -> bool:
        return self.kind is MessageKind.PLACEHOLDER

    def with_attachment(self, attachment: Attachment) -> "Message":
        return replace(self, attachment=attachment)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "kind": self.kind.value,
        }
        if self.attachment is not None:
            data["attachment"] = self.attachment.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        try:
            kind = MessageKind(data.get("kind", MessageKind.STANDARD.value))
        except ValueError:
            kind = MessageKind.STANDARD
        try:
            role = MessageRole(data.get("role", MessageRole.ASSISTANT.value))
        except ValueError:
            role = MessageRole.ASSISTANT
        return cls(
            id=str(data.get("id") or generate_id()),
            role=role,
            content=str(data.get("content") or ""),
            timestamp=int(data.get("timestamp") or 0),
            attachment=attachment_from_dict(data.get("attachment")),
            kind=kind,
        )


def make_message(
    role: MessageRole,
    content: str,
    *,
    attachment: Attachment | None = None,
    kind: MessageKind = MessageKind.STANDARD,
) -> Message:
    return Message(
        id=generate_id(),
        role=role,
        content=content,
        timestamp=now_ms(),
        attachment=attachment,
        kind=kind,
    )


@dataclass
class PinnedResult:
    id: str
    query: str
    columns: list[str]
    rows: list[list[Any]]
    timestamp: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "query": self.query,
            "columns": list(self.columns),
            "rows": [list(r) for r in self.rows],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PinnedResult":
        return cls(
            id=str(data.get("id") or generate_id("pin")),
            query=str(data.get("query") or ""),
            columns=list(data.get("columns") or []),
            rows=[list(r) for r in data.get("rows") or []],
            timestamp=int(data.get("timestamp") or 0),
        )


@dataclass
class Bookmark:
    """A timeline position worth returning to (jank frame, ANR, slow slice)."""

    id: str
    timestamp: int
    label: str
    type: str = "custom"
    description: str | None = None
    context: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "label": self.label,
            "type": self.type,
            "description": self.description,
            "context": dict(self.context),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Bookmark":
        return cls(
            id=str(data.get("id") or generate_id("bm")),
            timestamp=int(data.get("timestamp") or 0),
            label=str(data.get("label") or ""),
            type=str(data.get("type") or "custom"),
            description=data.get("description"),
            context=dict(data.get("context") or {}),
        )


@dataclass
class AnalysisSession:
    """One continuous conversation about one trace."""

    session_id: str
    trace_fingerprint: str
    trace_name: str
    created_at: int
    last_active_at: int
    remote_trace_id: str | None = None
    agent_session_id: str | None = None
    messages: list[Message] = field(default_factory=list)
    pinned_results: list[PinnedResult] = field(default_factory=list)
    bookmarks: list[Bookmark] = field(default_factory=list)
    summary: str | None = None

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "traceFingerprint": self.trace_fingerprint,
            "traceName": self.trace_name,
            "remoteTraceId": self.remote_trace_id,
            "agentSessionId": self.agent_session_id,
            "createdAt": self.created_at,
            "lastActiveAt": self.last_active_at,
            "messages": [m.to_dict() for m in self.messages],
            "pinnedResults": [p.to_dict() for p in self.pinned_results],
            "bookmarks": [b.to_dict() for b in self.bookmarks],
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AnalysisSession":
        return cls(
            session_id=str(data["sessionId"]),
            trace_fingerprint=str(data.get("traceFingerprint") or ""),
            trace_name=str(data.get("traceName") or ""),
            remote_trace_id=data.get("remoteTraceId"),
            agent_session_id=data.get("agentSessionId"),
            created_at=int(data.get("createdAt") or 0),
            last_active_at=int(data.get("lastActiveAt") or 0),
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            pinned_results=[PinnedResult.from_dict(p) for p in data.get("pinnedResults") or []],
            bookmarks=[Bookmark.from_dict(b) for b in data.get("bookmarks") or []],
            summary=data.get("summary"),
        )


@dataclass
class SessionsIndex:
    """Fingerprint -> ordered sessions; the only persisted aggregate."""

    by_trace: dict[str, list[AnalysisSession]] = field(default_factory=dict)

    def find(self, session_id: str) -> AnalysisSession | None:
        for sessions in self.by_trace.values():
            for session in sessions:
                if session.session_id == session_id:
                    return session
        return None

    def to_dict(self) -> dict:
        return {
            "byTrace": {
                fp: [s.to_dict() for s in sessions]
                for fp, sessions in self.by_trace.items()
            }
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionsIndex":
        """
        Rebuild the index, enforcing its invariants.

        Sessions filed under the wrong bucket are re-keyed by their own
        fingerprint and a repeated session id keeps only its first occurrence.
        """
        index = cls()
        seen: set[str] = set()
        by_trace = data.get("byTrace") if isinstance(data, dict) else None
        if not isinstance(by_trace, dict):
            return index
        for fp, sessions in by_trace.items():
            if not isinstance(sessions, list):
                continue
            for raw in sessions:
                if not isinstance(raw, dict) or "sessionId" not in raw:
                    continue
                try:
                    session = AnalysisSession.from_dict(raw)
                except (AttributeError, KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping unreadable session %s: %s", raw.get("sessionId"), exc)
                    continue
                if session.session_id in seen:
                    continue
                seen.add(session.session_id)
                if not session.trace_fingerprint:
                    session.trace_fingerprint = fp
                index.by_trace.setdefault(session.trace_fingerprint, []).append(session)
        return index
