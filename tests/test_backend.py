import tempfile
import unittest
from pathlib import Path
from unittest import mock

import requests

from perfetto_assistant.backend import (
    BackendClient,
    BackendError,
    TraceNotUploadedError,
    UploadedTrace,
)

BACKEND = "http://backend.test"


def response(status=200, json_data=None, headers=None, text=""):
    resp = mock.Mock(spec=requests.Response)
    resp.status_code = status
    resp.ok = status < 400
    resp.headers = headers or {}
    resp.reason = "Reason"
    resp.text = text
    if json_data is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = json_data
    return resp


class BackendTestCase(unittest.TestCase):
    def setUp(self):
        self.http = mock.Mock(spec=requests.Session)
        self.client = BackendClient(BACKEND + "/", session=self.http)


class TestHealth(BackendTestCase):
    def test_available(self):
        self.http.get.return_value = response(json_data={"available": True})
        self.assertTrue(self.client.check_available())
        self.http.get.assert_called_once_with(f"{BACKEND}/api/traces/health", timeout=1)

    def test_unreachable_or_unhealthy(self):
        self.http.get.side_effect = requests.ConnectionError("refused")
        self.assertFalse(self.client.check_available())

        self.http.get.side_effect = None
        self.http.get.return_value = response(json_data={"available": "yes"})
        self.assertFalse(self.client.check_available())

        self.http.get.return_value = response(status=503)
        self.assertFalse(self.client.check_available())


class TestRequests(BackendTestCase):
    @mock.patch("perfetto_assistant.backend.time.sleep")
    def test_rate_limit_is_retried(self, sleep):
        self.http.request.side_effect = [
            response(status=429, headers={"Retry-After": "2"}),
            response(json_data={"success": True, "sessionId": "agent-1", "isNewSession": True}),
        ]
        started = self.client.start_analysis("why?", "t-1")

        self.assertEqual(started.session_id, "agent-1")
        self.assertTrue(started.is_new_session)
        sleep.assert_called_once_with(2.0)
        _, kwargs = self.http.request.call_args
        self.assertEqual(kwargs["json"], {"query": "why?", "traceId": "t-1", "options": {}})

    @mock.patch("perfetto_assistant.backend.time.sleep")
    def test_rate_limit_gives_up(self, sleep):
        self.http.request.return_value = response(status=429)
        with self.assertRaises(BackendError) as ctx:
            self.client.start_analysis("why?", "t-1")
        self.assertEqual(ctx.exception.status, 429)
        self.assertEqual(sleep.call_count, 4)

    def test_session_id_is_sent_when_known(self):
        self.http.request.return_value = response(json_data={"success": True, "sessionId": "agent-1"})
        self.client.start_analysis("again", "t-1", session_id="agent-1")
        _, kwargs = self.http.request.call_args
        self.assertEqual(kwargs["json"]["sessionId"], "agent-1")

    def test_trace_not_uploaded(self):
        self.http.request.return_value = response(
            status=400, json_data={"code": "TRACE_NOT_UPLOADED", "error": "unknown trace"}
        )
        with self.assertRaises(TraceNotUploadedError) as ctx:
            self.client.start_analysis("why?", "t-1")
        self.assertEqual(ctx.exception.code, "TRACE_NOT_UPLOADED")

    def test_unsuccessful_start(self):
        self.http.request.return_value = response(json_data={"success": False, "error": "busy"})
        with self.assertRaisesRegex(BackendError, "busy"):
            self.client.start_analysis("why?", "t-1")

    def test_connection_error_is_wrapped(self):
        self.http.request.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(BackendError):
            self.client.verify_trace("t-1")

    def test_verify_trace(self):
        self.http.request.return_value = response(json_data={"trace": {"id": "t-1"}})
        self.assertTrue(self.client.verify_trace("t-1"))
        self.http.request.assert_called_with("GET", f"{BACKEND}/api/traces/t-1", timeout=30)

        self.http.request.return_value = response(status=404)
        self.assertFalse(self.client.verify_trace("t-1"))

        self.http.request.return_value = response(status=500, text="oops")
        with self.assertRaises(BackendError):
            self.client.verify_trace("t-1")


class TestUpload(BackendTestCase):
    def setUp(self):
        super().setUp()
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.trace = Path(tmp.name) / "scroll.pftrace"
        self.trace.write_bytes(b"\x0a\x00")

    def test_upload(self):
        self.http.request.return_value = response(
            json_data={"success": True, "trace": {"id": "t-7", "port": 9100}}
        )
        uploaded = self.client.upload_trace(self.trace)

        self.assertEqual(uploaded, UploadedTrace(trace_id="t-7", port=9100))
        args, kwargs = self.http.request.call_args
        self.assertEqual(args, ("POST", f"{BACKEND}/api/traces/upload"))
        self.assertEqual(kwargs["files"]["file"][0], "scroll.pftrace")
        self.assertEqual(kwargs["timeout"], 60)

    def test_upload_without_trace_id(self):
        self.http.request.return_value = response(json_data={"success": True, "trace": {}})
        with self.assertRaises(BackendError):
            self.client.upload_trace(self.trace)


if __name__ == "__main__":
    unittest.main()
