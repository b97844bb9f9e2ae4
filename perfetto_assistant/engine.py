"""Conversation engine: ties trace identity, sessions, the stream and dispatch together."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from pathlib import Path

import httpx

from perfetto_assistant.backend import BackendClient, BackendError, TraceNotUploadedError
from perfetto_assistant.dispatch import EventDispatcher
from perfetto_assistant.identity import TraceMeta, fingerprint
from perfetto_assistant.models import AnalysisSession, MessageKind, MessageRole, make_message
from perfetto_assistant.sessions import SessionStore
from perfetto_assistant.settings import Settings, load_settings
from perfetto_assistant.storage import FileKeyValueStore, KeyValueStore, default_store_root
from perfetto_assistant.stream import StatusUpdate, StreamConnectionManager
from perfetto_assistant.stream.connection import StatusKind

logger = logging.getLogger(__name__)


@dataclass
class AssistantContext:
    """Process-wide collaborators, built once at startup and passed around."""

    settings: Settings
    store: KeyValueStore
    sessions: SessionStore
    backend: BackendClient

    @classmethod
    def create(
        cls,
        store: KeyValueStore | None = None,
        settings: Settings | None = None,
        backend: BackendClient | None = None,
    ) -> "AssistantContext":
        store = store if store is not None else FileKeyValueStore(default_store_root())
        settings = settings or load_settings(store)
        backend = backend or BackendClient(
            settings.backend_url,
            timeout=settings.request_timeout_s,
            upload_timeout=settings.upload_timeout_s,
            health_timeout=settings.health_timeout_s,
        )
        return cls(settings=settings, store=store, sessions=SessionStore(store), backend=backend)


def welcome_text(trace_name: str, backend_url: str, available: bool) -> str:
    status = (
        f"Backend connected at {backend_url}."
        if available
        else f"Backend not reachable at {backend_url}; start it to run analyses."
    )
    return f"Ask anything about **{trace_name}**.\n\n{status}"


class AssistantEngine:
    def __init__(
        self,
        context: AssistantContext,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
    ):
        self.ctx = context
        self.transport = transport
        self.rng = rng
        self.fingerprint: str | None = None
        self.trace_name: str | None = None
        self.backend_available: bool | None = None
        self._manager: StreamConnectionManager | None = None
        self._run = 0

    @property
    def session(self) -> AnalysisSession | None:
        return self.ctx.sessions.active

    def _persist(self, session: AnalysisSession) -> None:
        self.ctx.sessions.save_session(session)

    def _new_session(self, remote_trace_id: str | None = None) -> AnalysisSession:
        session = self.ctx.sessions.create_session(
            self.fingerprint, self.trace_name, remote_trace_id=remote_trace_id
        )
        welcome = welcome_text(
            self.trace_name, self.ctx.settings.backend_url, bool(self.backend_available)
        )
        self.ctx.sessions.append_message(session, make_message(MessageRole.ASSISTANT, welcome))
        return session

    # -- trace lifecycle -----------------------------------------------------

    def on_trace_loaded(self, meta: TraceMeta) -> AnalysisSession:
        """
        Select the conversation for a freshly loaded trace.

        Resumes the most recently active session for the trace's fingerprint
        or starts a new one, then re-checks the session's remote trace id.
        """
        self.fingerprint = fingerprint(meta)
        self.trace_name = meta.title
        self.backend_available = self.ctx.backend.check_available()
        sessions = self.ctx.sessions

        sessions.migrate_legacy_history(self.fingerprint, self.trace_name)
        existing = sessions.list_sessions(self.fingerprint)
        if existing:
            session = max(existing, key=lambda s: s.last_active_at)
            sessions.active = session
            logger.info("Resuming session %s for %s", session.session_id, self.fingerprint)
        else:
            session = self._new_session()

        pending = sessions.recover_pending_remote_trace(self.ctx.settings.backend_url)
        if pending and not session.remote_trace_id:
            session.remote_trace_id = pending
            self._persist(session)

        self.verify_remote_trace()
        return self.ctx.sessions.active

    def verify_remote_trace(self) -> bool:
        """
        Confirm the active session's remote trace id with the backend.

        The id is cleared when the backend is not reachable. When the backend
        says the id is unknown, the session is replaced by a fresh one.
        """
        session = self.session
        if session is None or not session.remote_trace_id:
            return False
        if not self.backend_available:
            logger.info("Backend unavailable; clearing remote trace %s", session.remote_trace_id)
            session.remote_trace_id = None
            self._persist(session)
            return False
        try:
            valid = self.ctx.backend.verify_trace(session.remote_trace_id)
        except BackendError as exc:
            logger.warning("Could not verify remote trace %s: %s", session.remote_trace_id, exc)
            session.remote_trace_id = None
            self._persist(session)
            return False
        if valid:
            return True
        logger.info("Remote trace %s is gone; starting a new session", session.remote_trace_id)
        self.ctx.sessions.delete_session(session.session_id)
        self._new_session()
        return False

    def new_conversation(self) -> AnalysisSession:
        """Start a new session for the current trace, keeping its remote trace id."""
        if self.fingerprint is None:
            raise RuntimeError("No trace loaded")
        current = self.session
        return self._new_session(current.remote_trace_id if current else None)

    def ensure_remote_trace(self, trace_path: str | Path) -> str:
        """Upload the trace unless the active session already has a remote id."""
        session = self.session
        if session is None:
            raise RuntimeError("No trace loaded")
        if session.remote_trace_id:
            return session.remote_trace_id
        uploaded = self.ctx.backend.upload_trace(trace_path)
        self.ctx.sessions.store_pending_remote_trace(uploaded.trace_id, self.ctx.settings.backend_url)
        session.remote_trace_id = uploaded.trace_id
        self.ctx.sessions.append_message(
            session,
            make_message(MessageRole.SYSTEM, f"Trace uploaded to the backend ({uploaded.trace_id})."),
        )
        return uploaded.trace_id

    # -- analysis ------------------------------------------------------------

    def cancel(self) -> None:
        if self._manager is not None:
            self._manager.cancel()

    def _status_handler(self, dispatcher: EventDispatcher):
        def on_status(update: StatusUpdate) -> None:
            if update.kind is StatusKind.RECONNECTING:
                dispatcher.show_connection_status(update)
            elif update.kind is StatusKind.CONNECTED:
                dispatcher.clear_connection_status()
            elif update.kind is StatusKind.FAILED:
                dispatcher.show_connection_failed(update)
        return on_status

    async def send_query(self, query: str) -> AnalysisSession:
        """Ask ``query`` in the active session and stream the analysis into it."""
        session = self.session
        if session is None:
            raise RuntimeError("No trace loaded")
        sessions = self.ctx.sessions

        if not session.remote_trace_id:
            sessions.append_message(
                session,
                make_message(MessageRole.SYSTEM,
                             "**Trace not uploaded to the backend.** Upload it before asking."),
            )
            return session

        # A new query supersedes the live run and its in-progress lines.
        self.cancel()
        self._manager = None
        self._run += 1
        run = self._run
        session.messages[:] = [m for m in session.messages if m.kind is MessageKind.STANDARD]
        sessions.append_message(session, make_message(MessageRole.USER, query))

        try:
            started = await asyncio.to_thread(
                self.ctx.backend.start_analysis,
                query,
                session.remote_trace_id,
                session_id=session.agent_session_id,
            )
        except TraceNotUploadedError:
            session.remote_trace_id = None
            sessions.append_message(
                session,
                make_message(MessageRole.SYSTEM,
                             "**Trace not found on the backend.** Upload it again."),
            )
            return session
        except BackendError as exc:
            sessions.append_message(
                session, make_message(MessageRole.ASSISTANT, f"**Error:** {exc}")
            )
            return session
        if run != self._run:
            logger.debug("Query superseded before its stream opened")
            return session

        session.agent_session_id = started.session_id
        self._persist(session)

        dispatcher = EventDispatcher(
            session, backend_url=self.ctx.settings.backend_url, on_change=self._persist
        )
        dispatcher.begin_run()
        timeout = httpx.Timeout(self.ctx.settings.request_timeout_s, read=None)
        async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
            manager = StreamConnectionManager(
                client,
                self.ctx.settings.backend_url,
                max_retries=self.ctx.settings.max_retries,
                rng=self.rng,
                on_status=self._status_handler(dispatcher),
            )
            self._manager = manager
            terminal = False
            try:
                terminal = await self._consume(manager, dispatcher, started.session_id)
            finally:
                # Once a newer query started, the session belongs to its run.
                if run == self._run:
                    self._manager = None
                    if not terminal:
                        # Stream closed, gave up or timed out without analysis_completed.
                        dispatcher.complete_from_conclusion()
                    dispatcher.finish_run()
        return session

    async def _consume(
        self,
        manager: StreamConnectionManager,
        dispatcher: EventDispatcher,
        stream_session_id: str,
    ) -> bool:
        """
        Feed stream events to the dispatcher, in order, until the run ends.

        Returns True when a terminal event ended the run. A ``conclusion``
        starts the completion timer; if ``analysis_completed`` does not follow
        in time, the stream is cancelled and False is returned.
        """
        loop = asyncio.get_running_loop()
        terminal = False
        try:
            async with asyncio.timeout(None) as deadline:
                async with contextlib.aclosing(manager.open(stream_session_id)) as events:
                    async for event in events:
                        result = dispatcher.handle(event.event_type, event.data)
                        if result.conclusion_pending:
                            deadline.reschedule(loop.time() + self.ctx.settings.completion_timeout_s)
                        if result.is_terminal:
                            terminal = True
                            break
        except TimeoutError:
            logger.warning(
                "No analysis_completed within %.0fs of the conclusion; finishing run",
                self.ctx.settings.completion_timeout_s,
            )
            manager.cancel()
        return terminal
