"""Value and label formatting shared by the renderers and the console."""

from __future__ import annotations

import json
import re
from typing import Any

_IDENTIFIER_COLUMNS = {
    "id",
    "frame_id",
    "session_id",
    "scroll_id",
    "display_frame_token",
    "surface_frame_token",
    "token",
    "pid",
    "tid",
    "upid",
    "utid",
}

_LAYER_NAMES = {
    "jank_frames": "Jank Frames",
    "scrolling_sessions": "Scrolling Sessions",
    "frame_details": "Frame Details",
    "frame_analysis": "Frame Analysis",
    "slow_frames": "Slow Frames",
    "blocked_frames": "Blocked Frames",
    "sessions": "Sessions",
    "frames": "Frames",
    "metrics": "Metrics",
    "overview": "Overview",
    "summary": "Summary",
}

# First match wins, so unit-suffixed names must precede the generic patterns.
_COLUMN_PATTERNS: list[tuple[re.Pattern, dict]] = [
    (re.compile(r"^end_ts$|^end_ts_str$|^ts_end$|^end_time$", re.I),
     {"type": "timestamp", "format": "timestamp_relative", "clickAction": "navigate_timeline", "unit": "ns"}),
    (re.compile(r"^ts$|^ts_str$|^start_ts$|^start_ts_str$|^start_time$", re.I),
     {"type": "timestamp", "format": "timestamp_relative", "clickAction": "navigate_range",
      "unit": "ns", "durationColumn": "dur_str"}),
    (re.compile(r"_ts$|timestamp$|_timestamp$|start_time|end_time", re.I),
     {"type": "timestamp", "format": "timestamp_relative", "clickAction": "navigate_timeline", "unit": "ns"}),
    (re.compile(r"^dur_str$|_dur_str$|^duration_str$|_duration_str$", re.I),
     {"type": "duration", "format": "duration_ms", "unit": "ns"}),
    (re.compile(r"_ms$", re.I), {"type": "duration", "format": "duration_ms", "unit": "ms"}),
    (re.compile(r"_us$", re.I), {"type": "duration", "format": "duration_ms", "unit": "us"}),
    (re.compile(r"_ns$", re.I), {"type": "duration", "format": "duration_ms", "unit": "ns"}),
    (re.compile(r"^dur$|_dur$|duration$|_duration$|elapsed|latency", re.I),
     {"type": "duration", "format": "duration_ms", "unit": "ns"}),
    (re.compile(r"(?<!refresh_)(?<!frame_)(?<!sample_)rate$|ratio$|percent|pct$", re.I),
     {"type": "percentage", "format": "percentage"}),
    (re.compile(r"size$|bytes$|memory$|_kb$|_mb$|_gb$", re.I),
     {"type": "bytes", "format": "bytes_human"}),
    (re.compile(r"^frame_id$|^display_frame_token$|^surface_frame_token$", re.I),
     {"type": "string"}),
    (re.compile(r"^id$|_id$|^count$|_count$|^num_|_num$|^pid$|^tid$|^upid$|^utid$|_index$", re.I),
     {"type": "number", "format": "compact"}),
    (re.compile(r"^is_|^has_|^can_|_flag$", re.I), {"type": "boolean"}),
]


def infer_column_definition(name: str) -> dict:
    for pattern, definition in _COLUMN_PATTERNS:
        if pattern.search(name):
            return {"name": name, "type": "string", **definition}
    return {"name": name, "type": "string"}


def build_column_definitions(columns: list[str], explicit: list[dict] | None = None) -> list[dict]:
    """Explicit definitions override inferred ones, matched by column name."""
    explicit_by_name = {d["name"]: d for d in explicit or [] if isinstance(d, dict) and d.get("name")}
    definitions = []
    for name in columns:
        merged = {**infer_column_definition(name), **explicit_by_name.get(name, {})}
        merged["name"] = name
        definitions.append(merged)
    return definitions


def _is_identifier_column(col: str) -> bool:
    return col.endswith("_id") or col in _IDENTIFIER_COLUMNS


def format_display_value(val: Any, column_name: str | None = None) -> str:
    """Render any cell value as short display text, using the column name as a hint."""
    col = (column_name or "").lower()

    if val is None:
        return ""

    if isinstance(val, bool):
        return "✓" if val else "✗"

    if isinstance(val, (int, float)):
        if _is_identifier_column(col):
            return str(int(val)) if float(val).is_integer() else str(val)
        if "rate" in col or "percent" in col:
            if val > 1:
                return f"{val:.2f}%"
            return f"{val * 100:.1f}%"
        if "ns" in col:
            if val > 1_000_000_000:
                return f"{val / 1_000_000_000:.2f}s"
            if val > 1_000_000:
                return f"{val / 1_000_000:.2f}ms"
            if val > 1000:
                return f"{val / 1000:.2f}µs"
            return f"{val}ns"
        if "duration" in col or "time" in col or "ms" in col:
            if val > 1000:
                return f"{val / 1000:.2f}s"
            return f"{val:.1f}ms"
        if abs(val) >= 1000:
            return f"{val:,}" if isinstance(val, int) else f"{val:,.2f}"
        if isinstance(val, float) and not val.is_integer():
            return f"{val:.2f}"
        return str(int(val)) if isinstance(val, float) else str(val)

    if isinstance(val, list):
        if not val:
            return "[]"
        if len(val) <= 3:
            return "[" + ", ".join(format_display_value(v) for v in val) + "]"
        return f"[{len(val)} items]"

    if isinstance(val, dict):
        if not val:
            return "{}"
        if len(val) <= 3:
            pairs = [f"{k}: {format_display_value(v)}" for k, v in val.items()]
            return "{" + ", ".join(pairs) + "}"
        try:
            return json.dumps(val, ensure_ascii=False)
        except (TypeError, ValueError):
            return f"{{{len(val)} fields}}"

    if isinstance(val, str) and _is_identifier_column(col):
        compact = re.sub(r"[,\s，_]", "", val.strip())
        if compact.isdigit():
            return compact

    return str(val)


def format_layer_name(key: str) -> str:
    """``jank_frames`` -> ``Jank Frames``."""
    known = _LAYER_NAMES.get(key.lower())
    if known:
        return known
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), key.replace("_", " "))


def parse_summary_to_table(summary: str) -> tuple[list[str], list[list[str]]] | None:
    """
    Parse ``"k1: v1, k2: v2"`` (or ``|``-separated) into a one-row table.

    Returns None unless at least two key/value pairs are found.
    """
    if not summary or not isinstance(summary, str):
        return None
    parts = [p.strip() for p in re.split(r"[,|]", summary) if p.strip()]
    if len(parts) < 2:
        return None
    pairs = []
    for part in parts:
        match = re.match(r"^([^:]+):\s*(.+)$", part)
        if match:
            pairs.append((match.group(1).strip(), match.group(2).strip()))
    if len(pairs) < 2:
        return None
    columns = [k for k, _ in pairs]
    rows = [[format_display_value(v, k) for k, v in pairs]]
    return columns, rows


def normalize_markdown_spacing(content: str) -> str:
    """Collapse runs of blank lines and trailing spaces."""
    text = content.replace("\r\n", "\n")
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n[ \t]*\n(?:[ \t]*\n)+", "\n\n", text)
    return text.strip()


def parse_evidence(evidence: Any) -> list[str]:
    """Evidence arrives as a list, a JSON-encoded list or a bare string."""
    if not evidence:
        return []
    if isinstance(evidence, list):
        return [str(e) for e in evidence]
    if isinstance(evidence, str):
        try:
            parsed = json.loads(evidence)
        except ValueError:
            return [evidence]
        return [str(e) for e in parsed] if isinstance(parsed, list) else []
    return []
