import unittest
from types import SimpleNamespace
from unittest import mock

from perfetto_assistant.identity import (
    TraceMeta,
    fingerprint,
    read_trace_meta,
    trace_meta_from_processor,
)


class FakeQueryResult(list):
    def __init__(self, rows, column_names):
        super().__init__(rows)
        self.column_names = column_names


class FakeTraceProcessor:
    def __init__(self, rows):
        self.rows = rows
        self.queries = []
        self.closed = False

    def query(self, sql):
        self.queries.append(sql)
        return FakeQueryResult(
            [SimpleNamespace(**row) for row in self.rows],
            ["start_ts", "end_ts"],
        )

    def close(self):
        self.closed = True


class TestFingerprint(unittest.TestCase):
    def test_fingerprint_is_deterministic(self):
        meta = TraceMeta(start=0, end=1000000, title="demo")
        first = fingerprint(meta)
        self.assertEqual(first, fingerprint(meta))
        self.assertEqual(first, fingerprint(TraceMeta(start=0, end=1000000, title="demo")))
        self.assertEqual(first, "0_1000000_demo")

    def test_fingerprint_differs_by_bounds_and_title(self):
        base = fingerprint(TraceMeta(0, 1000, "a.pftrace"))
        self.assertNotEqual(base, fingerprint(TraceMeta(0, 1001, "a.pftrace")))
        self.assertNotEqual(base, fingerprint(TraceMeta(0, 1000, "b.pftrace")))

    def test_meta_from_processor_reads_trace_bounds(self):
        tp = FakeTraceProcessor([{"start_ts": 5, "end_ts": 905}])
        meta = trace_meta_from_processor(tp, "demo")
        self.assertEqual(meta, TraceMeta(5, 905, "demo"))
        self.assertIn("trace_bounds", tp.queries[0])

    def test_meta_from_processor_without_bounds(self):
        meta = trace_meta_from_processor(FakeTraceProcessor([]), "empty")
        self.assertEqual(meta, TraceMeta(0, 0, "empty"))

    def test_read_trace_meta_uses_file_name_and_closes(self):
        tp = FakeTraceProcessor([{"start_ts": 1, "end_ts": 2}])
        with mock.patch("perfetto_assistant.identity.TraceProcessor", return_value=tp) as ctor:
            meta = read_trace_meta("/tmp/traces/app.pftrace")
        ctor.assert_called_once_with(trace="/tmp/traces/app.pftrace")
        self.assertEqual(meta.title, "app.pftrace")
        self.assertTrue(tp.closed)


if __name__ == "__main__":
    unittest.main()
