"""Trace identity: a stable fingerprint for "this trace" across reloads."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from perfetto.trace_processor import TraceProcessor


@dataclass(frozen=True)
class TraceMeta:
    """Bounds and title of a loaded trace, as reported by the trace engine."""

    start: int
    end: int
    title: str


def fingerprint(meta: TraceMeta) -> str:
    """
    Derive the fingerprint for a trace.

    The same (start, end, title) always yields the same string. It is not
    globally unique, only unique enough to key local conversation history.
    """
    return f"{int(meta.start)}_{int(meta.end)}_{meta.title}"


def _q(tp: TraceProcessor, sql: str) -> list[dict]:
    """Execute a SQL query and return results as a list of dictionaries."""
    result = tp.query(sql)
    rows = []
    for row in result:
        row_dict = {col: getattr(row, col) for col in result.column_names}
        rows.append(row_dict)
    return rows


def trace_meta_from_processor(tp: TraceProcessor, title: str) -> TraceMeta:
    rows = _q(tp, "SELECT start_ts, end_ts FROM trace_bounds")
    if not rows:
        return TraceMeta(start=0, end=0, title=title)
    start = rows[0].get("start_ts") or 0
    end = rows[0].get("end_ts") or 0
    return TraceMeta(start=int(start), end=int(end), title=title)


def read_trace_meta(trace_path: str | Path) -> TraceMeta:
    """
    Load a trace file with the Perfetto trace processor and read its bounds.

    The file name is used as the trace title.
    """
    path = Path(trace_path)
    tp = TraceProcessor(trace=str(path))
    try:
        return trace_meta_from_processor(tp, path.name)
    finally:
        tp.close()
