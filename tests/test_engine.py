import asyncio
import json
import unittest
from unittest import mock

import httpx

from perfetto_assistant.backend import AnalysisStart, BackendClient, BackendError, TraceNotUploadedError
from perfetto_assistant.engine import AssistantContext, AssistantEngine
from perfetto_assistant.identity import TraceMeta, fingerprint
from perfetto_assistant.models import MessageKind, MessageRole, make_message
from perfetto_assistant.settings import Settings
from perfetto_assistant.storage import MemoryKeyValueStore

BACKEND = "http://backend.test"
META = TraceMeta(start=0, end=5_000_000, title="scroll.pftrace")


def sse(*events):
    chunks = []
    for event_type, data in events:
        chunks.append(f"event: {event_type}\ndata: {json.dumps(data)}\n\n")
    return "".join(chunks).encode("utf-8")


def stream_transport(body, requests=None):
    def handler(request):
        if requests is not None:
            requests.append(request)
        return httpx.Response(200, headers={"Content-Type": "text/event-stream"}, content=body)
    return httpx.MockTransport(handler)


def make_engine(transport=None, *, available=True, verify=True, completion_timeout_s=30.0):
    backend = mock.Mock(spec=BackendClient)
    backend.check_available.return_value = available
    backend.verify_trace.return_value = verify
    backend.start_analysis.return_value = AnalysisStart(session_id="agent-1", is_new_session=True)
    settings = Settings(backend_url=BACKEND, completion_timeout_s=completion_timeout_s)
    ctx = AssistantContext.create(store=MemoryKeyValueStore(), settings=settings, backend=backend)
    return AssistantEngine(ctx, transport=transport)


class TestTraceLifecycle(unittest.TestCase):
    def test_first_load_creates_session_with_welcome(self):
        engine = make_engine()
        session = engine.on_trace_loaded(META)

        self.assertEqual(session.trace_fingerprint, fingerprint(META))
        self.assertEqual(len(session.messages), 1)
        self.assertEqual(session.messages[0].role, MessageRole.ASSISTANT)
        self.assertIn("scroll.pftrace", session.messages[0].content)
        self.assertIn("Backend connected", session.messages[0].content)

    def test_reload_resumes_existing_session(self):
        engine = make_engine()
        first = engine.on_trace_loaded(META)
        engine.ctx.sessions.append_message(first, make_message(MessageRole.USER, "hello"))

        again = AssistantEngine(engine.ctx).on_trace_loaded(META)
        self.assertEqual(again.session_id, first.session_id)
        self.assertEqual([m.content for m in again.messages][-1], "hello")
        self.assertEqual(len(engine.ctx.sessions.list_sessions(fingerprint(META))), 1)

    def test_unknown_remote_trace_starts_new_session(self):
        engine = make_engine(verify=False)
        first = engine.on_trace_loaded(META)
        first.remote_trace_id = "gone"
        engine.ctx.sessions.save_session(first)

        session = engine.on_trace_loaded(META)
        self.assertNotEqual(session.session_id, first.session_id)
        self.assertIsNone(session.remote_trace_id)
        self.assertIsNone(engine.ctx.sessions.get_session(first.session_id))
        engine.ctx.backend.verify_trace.assert_called_with("gone")

    def test_remote_trace_cleared_when_backend_down(self):
        engine = make_engine(available=False)
        first = engine.on_trace_loaded(META)
        first.remote_trace_id = "t-1"
        engine.ctx.sessions.save_session(first)

        session = engine.on_trace_loaded(META)
        self.assertEqual(session.session_id, first.session_id)
        self.assertIsNone(session.remote_trace_id)
        engine.ctx.backend.verify_trace.assert_not_called()

    def test_verify_error_clears_remote_trace(self):
        engine = make_engine()
        engine.ctx.backend.verify_trace.side_effect = BackendError("boom", status=500)
        session = engine.on_trace_loaded(META)
        session.remote_trace_id = "t-1"
        self.assertFalse(engine.verify_remote_trace())
        self.assertIsNone(session.remote_trace_id)

    def test_pending_upload_is_recovered(self):
        engine = make_engine()
        engine.ctx.sessions.store_pending_remote_trace("t-9", BACKEND)
        session = engine.on_trace_loaded(META)
        self.assertEqual(session.remote_trace_id, "t-9")

    def test_upload_records_remote_trace(self):
        engine = make_engine()
        engine.ctx.backend.upload_trace.return_value = mock.Mock(trace_id="t-2", port=None)
        session = engine.on_trace_loaded(META)

        self.assertEqual(engine.ensure_remote_trace("scroll.pftrace"), "t-2")
        self.assertEqual(session.remote_trace_id, "t-2")
        self.assertEqual(session.messages[-1].role, MessageRole.SYSTEM)
        self.assertEqual(engine.ensure_remote_trace("scroll.pftrace"), "t-2")
        engine.ctx.backend.upload_trace.assert_called_once()

    def test_new_conversation_keeps_remote_trace(self):
        engine = make_engine()
        first = engine.on_trace_loaded(META)
        first.remote_trace_id = "t-1"
        second = engine.new_conversation()
        self.assertNotEqual(second.session_id, first.session_id)
        self.assertEqual(second.remote_trace_id, "t-1")
        self.assertIs(engine.session, second)


class TestSendQuery(unittest.IsolatedAsyncioTestCase):
    def loaded(self, transport, **kwargs):
        engine = make_engine(transport, **kwargs)
        session = engine.on_trace_loaded(META)
        session.remote_trace_id = "t-1"
        return engine, session

    async def test_stream_produces_single_answer(self):
        requests = []
        body = sse(
            ("connected", {"type": "connected"}),
            ("progress", {"data": {"message": "A"}}),
            ("progress", {"data": {"message": "B"}}),
            ("analysis_completed", {"data": {"answer": "done", "reportUrl": "/r/1"}}),
        )
        engine, session = self.loaded(stream_transport(body, requests))

        await engine.send_query("why is it janky?")

        contents = [m.content for m in session.messages]
        self.assertEqual(contents[-2:], ["why is it janky?", "done"])
        self.assertEqual(session.messages[-1].attachment.url, f"{BACKEND}/r/1")
        self.assertEqual(session.agent_session_id, "agent-1")
        self.assertEqual(str(requests[0].url), f"{BACKEND}/api/agent/agent-1/stream")
        engine.ctx.backend.start_analysis.assert_called_once_with(
            "why is it janky?", "t-1", session_id=None
        )

        stored = engine.ctx.sessions.get_session(session.session_id)
        self.assertEqual(stored.messages[-1].content, "done")

    async def test_stream_end_promotes_conclusion(self):
        body = sse(
            ("progress", {"data": {"message": "working"}}),
            ("conclusion", {"data": {"conclusion": "binder contention"}}),
        )
        engine, session = self.loaded(stream_transport(body))

        await engine.send_query("q")
        self.assertEqual(session.messages[-1].content, "binder contention")
        self.assertFalse(any(m.kind is MessageKind.PLACEHOLDER for m in session.messages))

    async def test_completion_timeout_promotes_conclusion(self):
        async def hanging_body():
            yield sse(("conclusion", {"data": {"conclusion": "main thread blocked"}}))
            await asyncio.Event().wait()

        def handler(request):
            return httpx.Response(200, content=hanging_body())

        engine, session = self.loaded(httpx.MockTransport(handler), completion_timeout_s=0.05)

        await asyncio.wait_for(engine.send_query("q"), timeout=5)
        finals = [m for m in session.messages if m.content == "main thread blocked"]
        self.assertEqual(len(finals), 1)

    async def test_newer_query_owns_the_session(self):
        release = asyncio.Event()

        async def first_body():
            yield sse(("progress", {"data": {"message": "first working"}}))
            await release.wait()
            yield sse(("progress", {"data": {"message": "first late"}}))

        async def second_body():
            yield sse(("progress", {"data": {"message": "second working"}}))
            await asyncio.Event().wait()

        def handler(request):
            body = first_body() if "agent-1" in request.url.path else second_body()
            return httpx.Response(200, content=body)

        engine, session = self.loaded(httpx.MockTransport(handler))
        engine.ctx.backend.start_analysis.side_effect = [
            AnalysisStart(session_id="agent-1"),
            AnalysisStart(session_id="agent-2"),
        ]

        async def wait_for_last(content):
            for _ in range(200):
                if session.messages and session.messages[-1].content == content:
                    return
                await asyncio.sleep(0.01)
            self.fail(f"never saw {content!r}")

        first = asyncio.create_task(engine.send_query("first"))
        await wait_for_last("first working")
        second = asyncio.create_task(engine.send_query("second"))
        await wait_for_last("second working")

        release.set()
        await asyncio.wait_for(first, timeout=1)
        self.assertIsNotNone(engine._manager)
        contents = [m.content for m in session.messages]
        self.assertEqual(contents[-3:], ["first", "second", "second working"])
        self.assertNotIn("first late", contents)

        engine.cancel()
        await asyncio.wait_for(second, timeout=1)
        self.assertIsNone(engine._manager)
        self.assertEqual(session.messages[-1].content, "second")
        self.assertFalse(any(m.kind is MessageKind.PLACEHOLDER for m in session.messages))

    async def test_query_without_remote_trace(self):
        engine = make_engine()
        session = engine.on_trace_loaded(META)

        await engine.send_query("q")
        self.assertEqual(session.messages[-1].role, MessageRole.SYSTEM)
        self.assertIn("not uploaded", session.messages[-1].content)
        engine.ctx.backend.start_analysis.assert_not_called()

    async def test_trace_missing_on_backend(self):
        engine, session = self.loaded(stream_transport(b""))
        engine.ctx.backend.start_analysis.side_effect = TraceNotUploadedError("gone", status=400)

        await engine.send_query("q")
        self.assertIsNone(session.remote_trace_id)
        self.assertIn("not found", session.messages[-1].content)

    async def test_backend_error_is_reported(self):
        engine, session = self.loaded(stream_transport(b""))
        engine.ctx.backend.start_analysis.side_effect = BackendError("Analysis request failed: 500")

        await engine.send_query("q")
        self.assertEqual(session.messages[-1].content, "**Error:** Analysis request failed: 500")

    async def test_agent_session_is_reused(self):
        body = sse(("analysis_completed", {"data": {"answer": "ok"}}))
        engine, session = self.loaded(stream_transport(body))

        await engine.send_query("first")
        await engine.send_query("second")
        engine.ctx.backend.start_analysis.assert_called_with("second", "t-1", session_id="agent-1")


if __name__ == "__main__":
    unittest.main()
