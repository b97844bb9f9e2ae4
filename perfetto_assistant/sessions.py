"""Session store: conversation sessions keyed by trace fingerprint.

Every mutation reads, modifies and writes back the whole sessions index.
Concurrent writers are not coordinated; the last one wins.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from perfetto_assistant.models import (
    AnalysisSession,
    Bookmark,
    Message,
    MessageRole,
    PinnedResult,
    SessionsIndex,
    generate_id,
    now_ms,
)
from perfetto_assistant.storage import (
    HISTORY_KEY,
    PENDING_REMOTE_TRACE_KEY,
    SESSIONS_KEY,
    KeyValueStore,
)

logger = logging.getLogger(__name__)

PENDING_REMOTE_TRACE_TTL_MS = 60_000
DEFAULT_SESSION_MAX_AGE_DAYS = 30
SUMMARY_PREVIEW_CHARS = 30
DEFAULT_SESSION_SUMMARY = "New conversation"


class SessionStore:
    """CRUD over sessions plus the notion of the currently active session."""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self.active: AnalysisSession | None = None

    # -- index persistence -------------------------------------------------

    def load_index(self) -> SessionsIndex:
        raw = self.store.get(SESSIONS_KEY)
        if raw is None:
            return SessionsIndex()
        try:
            return SessionsIndex.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding unreadable sessions index: %s", exc)
            return SessionsIndex()

    def save_index(self, index: SessionsIndex) -> None:
        self.store.set(SESSIONS_KEY, index.to_dict())

    # -- queries -------------------------------------------------------------

    def list_sessions(self, fingerprint: str) -> list[AnalysisSession]:
        return list(self.load_index().by_trace.get(fingerprint, []))

    def get_session(self, session_id: str) -> AnalysisSession | None:
        return self.load_index().find(session_id)

    # -- mutations -----------------------------------------------------------

    def create_session(
        self,
        fingerprint: str,
        trace_name: str,
        remote_trace_id: str | None = None,
    ) -> AnalysisSession:
        """Append a new empty session to the fingerprint's bucket and activate it."""
        created = now_ms()
        session = AnalysisSession(
            session_id=generate_id("session"),
            trace_fingerprint=fingerprint,
            trace_name=trace_name,
            remote_trace_id=remote_trace_id,
            created_at=created,
            last_active_at=created,
        )
        index = self.load_index()
        index.by_trace.setdefault(fingerprint, []).append(session)
        self.save_index(index)
        self.active = session
        logger.debug("Created session %s for %s", session.session_id, fingerprint)
        return session

    def save_session(self, session: AnalysisSession) -> None:
        """Upsert ``session`` by id within its fingerprint bucket."""
        session.last_active_at = now_ms()
        index = self.load_index()
        bucket = index.by_trace.setdefault(session.trace_fingerprint, [])
        for i, existing in enumerate(bucket):
            if existing.session_id == session.session_id:
                bucket[i] = session
                break
        else:
            # The id may still live under another bucket if the session was
            # re-keyed; drop that copy so ids stay unique.
            for fp, sessions in index.by_trace.items():
                if fp == session.trace_fingerprint:
                    continue
                sessions[:] = [s for s in sessions if s.session_id != session.session_id]
            bucket.append(session)
        self.save_index(index)

    def update_session(self, fingerprint: str, session_id: str, **updates) -> bool:
        """Apply field ``updates`` to a stored session; False when not found."""
        index = self.load_index()
        sessions = index.by_trace.get(fingerprint)
        if not sessions:
            return False
        for i, session in enumerate(sessions):
            if session.session_id == session_id:
                updated = replace(session, **updates)
                updated.last_active_at = now_ms()
                sessions[i] = updated
                self.save_index(index)
                if self.active is not None and self.active.session_id == session_id:
                    self.active = updated
                return True
        return False

    def delete_session(self, session_id: str) -> bool:
        """
        Remove a session from whichever bucket holds it.

        When the deleted session was active, ``active`` becomes None and the
        caller is expected to create a replacement.
        """
        index = self.load_index()
        for fp, sessions in index.by_trace.items():
            for i, session in enumerate(sessions):
                if session.session_id != session_id:
                    continue
                del sessions[i]
                if not sessions:
                    del index.by_trace[fp]
                self.save_index(index)
                if self.active is not None and self.active.session_id == session_id:
                    self.active = None
                logger.debug("Deleted session %s", session_id)
                return True
        if self.active is not None and self.active.session_id == session_id:
            self.active = None
            return True
        return False

    def load_session(self, session_id: str) -> bool:
        """Make a stored session active, restoring messages, pins and bookmarks."""
        session = self.get_session(session_id)
        if session is None:
            return False
        self.active = session
        return True

    def append_message(self, session: AnalysisSession, message: Message) -> None:
        session.messages.append(message)
        self.save_session(session)

    def pin_result(self, session: AnalysisSession, pinned: PinnedResult) -> None:
        session.pinned_results.append(pinned)
        self.save_session(session)

    def add_bookmark(self, session: AnalysisSession, bookmark: Bookmark) -> None:
        session.bookmarks.append(bookmark)
        self.save_session(session)

    # -- maintenance ---------------------------------------------------------

    def cleanup_old_sessions(self, max_age_days: int = DEFAULT_SESSION_MAX_AGE_DAYS) -> int:
        """Drop sessions idle for longer than ``max_age_days``; return how many."""
        index = self.load_index()
        max_age_ms = max_age_days * 24 * 60 * 60 * 1000
        now = now_ms()
        deleted = 0
        for fp in list(index.by_trace):
            sessions = index.by_trace[fp]
            kept = [s for s in sessions if (now - s.last_active_at) < max_age_ms]
            deleted += len(sessions) - len(kept)
            if kept:
                index.by_trace[fp] = kept
            else:
                del index.by_trace[fp]
        if deleted:
            self.save_index(index)
            logger.info("Cleaned up %d old sessions", deleted)
        return deleted

    def migrate_legacy_history(self, fingerprint: str, trace_name: str) -> bool:
        """
        Turn a legacy flat history record into a session.

        Only happens when the record has messages and the trace has no
        sessions yet.
        """
        raw = self.store.get(HISTORY_KEY)
        if raw is None:
            return False
        if isinstance(raw, list):
            raw = {"messages": raw}
        if not isinstance(raw, dict):
            return False
        try:
            messages = [Message.from_dict(m) for m in raw.get("messages") or [] if isinstance(m, dict)]
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring unreadable legacy history: %s", exc)
            return False
        target = raw.get("traceFingerprint") or fingerprint
        if not messages or not target:
            return False
        if self.list_sessions(target):
            return False

        session = AnalysisSession(
            session_id=generate_id("session"),
            trace_fingerprint=target,
            trace_name=trace_name,
            remote_trace_id=raw.get("backendTraceId"),
            created_at=messages[0].timestamp or now_ms(),
            last_active_at=messages[-1].timestamp or now_ms(),
            messages=messages,
        )
        index = self.load_index()
        index.by_trace.setdefault(target, []).append(session)
        self.save_index(index)
        logger.info("Migrated legacy history into session %s", session.session_id)
        return True

    # -- pending remote trace ------------------------------------------------

    def store_pending_remote_trace(self, trace_id: str, backend_url: str) -> None:
        self.store.set(
            PENDING_REMOTE_TRACE_KEY,
            {"traceId": trace_id, "backendUrl": backend_url, "timestamp": now_ms()},
        )

    def recover_pending_remote_trace(self, backend_url: str) -> str | None:
        """
        Return the trace id uploaded just before a restart, at most once.

        The record expires after 60 seconds and only matches the backend it
        was uploaded to.
        """
        data = self.store.get(PENDING_REMOTE_TRACE_KEY)
        if not isinstance(data, dict):
            return None
        age = now_ms() - int(data.get("timestamp") or 0)
        if age >= PENDING_REMOTE_TRACE_TTL_MS:
            self.store.remove(PENDING_REMOTE_TRACE_KEY)
            logger.debug("Cleared stale pending remote trace")
            return None
        if data.get("backendUrl") != backend_url:
            return None
        self.store.remove(PENDING_REMOTE_TRACE_KEY)
        trace_id = data.get("traceId")
        return str(trace_id) if trace_id else None


def session_summary(session: AnalysisSession) -> str:
    """Short label for a session: its summary, else its first question."""
    if session.summary:
        return session.summary
    for message in session.messages:
        if message.role is MessageRole.USER:
            text = message.content
            if len(text) > SUMMARY_PREVIEW_CHARS:
                return text[:SUMMARY_PREVIEW_CHARS] + "..."
            return text
    return DEFAULT_SESSION_SUMMARY
