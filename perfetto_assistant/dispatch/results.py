"""Structured results to messages: envelope widgets and layered skill output."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from perfetto_assistant.envelope import EnvelopeError, parse_envelope, render
from perfetto_assistant.envelope.formatters import (
    format_layer_name,
    parse_evidence,
    parse_summary_to_table,
)
from perfetto_assistant.envelope.model import normalize_rows
from perfetto_assistant.envelope.widgets import TableResult, TextBlock, Widget
from perfetto_assistant.models import Message, MessageRole, make_message

logger = logging.getLogger(__name__)

CATEGORY_NAMES = {
    "APP": "Application issue",
    "SYSTEM": "System issue",
    "MIXED": "Mixed issue",
    "UNKNOWN": "Unknown",
}

COMPONENT_NAMES = {
    "MAIN_THREAD": "Main thread",
    "RENDER_THREAD": "Render thread",
    "SURFACE_FLINGER": "SurfaceFlinger",
    "BINDER": "Binder IPC",
    "CPU_SCHEDULING": "CPU scheduling",
    "CPU_AFFINITY": "CPU affinity",
    "GPU": "GPU",
    "MEMORY": "Memory",
    "IO": "IO",
    "MAIN_THREAD_BLOCKING": "Main thread blocking",
    "UNKNOWN": "Unknown",
}


def widget_to_message(widget: Widget) -> Message:
    if isinstance(widget, TextBlock):
        content = f"**{widget.title}**\n\n{widget.content}" if widget.title else widget.content
        return make_message(MessageRole.ASSISTANT, content)
    return make_message(MessageRole.ASSISTANT, "", attachment=widget)


def render_step(raw: dict) -> list[Message]:
    """Render one envelope-shaped step result; malformed steps render nothing."""
    try:
        envelope = parse_envelope(raw)
    except EnvelopeError as exc:
        logger.warning("Dropping malformed step result: %s", exc)
        return []
    return [widget_to_message(w) for w in render(envelope)]


def _is_step_result(obj: Any) -> bool:
    if not isinstance(obj, dict) or "data" not in obj:
        return False
    data = obj["data"]
    if isinstance(data, list):
        return True
    return isinstance(data, dict) and (
        isinstance(data.get("columns"), list) or isinstance(data.get("rows"), list)
    )


def overview_messages(overview: dict, skill_name: str | None = None) -> list[Message]:
    """Overview layer: one widget per entry, routed by each entry's display format."""
    messages = []
    for key, value in overview.items():
        if value is None:
            continue
        if _is_step_result(value):
            display = dict(value.get("display") or {})
            if not display.get("title"):
                context = f" ({skill_name})" if skill_name else ""
                display["title"] = format_layer_name(key) + context
            display.setdefault("format", "table")
            messages.extend(render_step({"meta": {}, "display": display, "data": value["data"]}))
        elif isinstance(value, dict):
            if key in ("conclusion", "root_cause_classification"):
                continue
            columns = list(value)
            table = TableResult(
                title=format_layer_name(key),
                columns=tuple(columns),
                rows=(tuple(value[c] for c in columns),),
            )
            messages.append(widget_to_message(table))
    return messages


def find_frame_detail(deep: Any, frame_id: Any, session_id: Any = None) -> dict | None:
    """Look a frame up in the deep layer, keyed ``session -> frame``."""
    if not isinstance(deep, dict) or frame_id is None:
        return None
    session_keys = {str(session_id), f"session_{session_id}"} if session_id is not None else None
    frame_keys = (str(frame_id), f"frame_{frame_id}")
    for sid, frames in deep.items():
        if session_keys is not None and sid not in session_keys:
            continue
        if not isinstance(frames, dict):
            continue
        for fk in frame_keys:
            detail = frames.get(fk)
            if detail:
                return detail
    return None


def _deep_expandable(items: list[dict], deep: Any) -> tuple[dict | None, ...]:
    expandable = []
    for item in items:
        frame_id = item.get("frame_id") or item.get("frameId") or item.get("id")
        session_id = item.get("session_id") or item.get("sessionId")
        detail = find_frame_detail(deep, frame_id, session_id)
        if detail is None:
            expandable.append(None)
        else:
            expandable.append({"item": detail.get("item") or item, "sections": detail.get("data")})
    if not any(expandable):
        return ()
    return tuple(expandable)


def list_messages(list_layer: dict, deep: Any = None) -> list[Message]:
    """List layer: one table per entry, rows optionally expandable from the deep layer."""
    messages = []
    for key, value in list_layer.items():
        if _is_step_result(value):
            display = dict(value.get("display") or {})
            data = value["data"]
        elif isinstance(value, list):
            display, data = {}, value
        else:
            continue
        display["format"] = "table"
        title = display.get("title") or format_layer_name(key)

        columns, rows = normalize_rows(data)
        if not rows:
            continue
        rendered = render_step({"meta": {}, "display": display, "data": data})
        for message in rendered:
            table = message.attachment
            if not isinstance(table, TableResult):
                continue
            updates = {"title": f"{title} ({table.row_count} rows)"}
            if not table.expandable and display.get("expandable") is True and deep:
                items = [dict(zip(columns, row)) for row in rows]
                updates["expandable"] = _deep_expandable(items, deep)
            messages.append(message.with_attachment(replace(table, **updates)))
    return messages


def extract_conclusion(overview: Any) -> dict | None:
    """Root-cause conclusion nested in, or flattened into, the overview layer."""
    if not isinstance(overview, dict):
        return None
    nested = overview.get("conclusion") or overview.get("root_cause_classification")
    if isinstance(nested, dict) and (nested.get("problem_category") or nested.get("category")):
        return {
            "category": nested.get("problem_category") or nested.get("category"),
            "component": nested.get("problem_component") or nested.get("component"),
            "confidence": nested.get("confidence") or 0.5,
            "summary": nested.get("root_cause_summary") or nested.get("summary") or "",
            "evidence": parse_evidence(nested.get("evidence")),
            "suggestion": nested.get("suggestion"),
        }
    if overview.get("problem_category"):
        return {
            "category": overview["problem_category"],
            "component": overview.get("problem_component"),
            "confidence": overview.get("confidence") or 0.5,
            "summary": overview.get("root_cause_summary") or "",
            "evidence": parse_evidence(overview.get("evidence")),
            "suggestion": overview.get("suggestion"),
        }
    return None


def conclusion_card(conclusion: dict) -> Message:
    category = str(conclusion.get("category") or "UNKNOWN")
    component = str(conclusion.get("component") or "UNKNOWN")
    try:
        confidence = round(float(conclusion.get("confidence") or 0.5) * 100)
    except (TypeError, ValueError):
        confidence = 50
    filled = max(0, min(10, confidence // 10))
    bar = "█" * filled + "░" * (10 - filled)

    lines = [
        "## Analysis conclusion",
        "",
        f"**Category:** **{CATEGORY_NAMES.get(category, category)}**",
        f"**Component:** `{COMPONENT_NAMES.get(component, component)}`",
        f"**Confidence:** {bar} {confidence}%",
        "",
        "### Root cause",
        str(conclusion.get("summary") or ""),
    ]
    if conclusion.get("suggestion"):
        lines += ["", "### Suggestion", str(conclusion["suggestion"])]
    evidence = parse_evidence(conclusion.get("evidence"))
    if evidence:
        lines += ["", "### Evidence"]
        lines += [f"- {e}" for e in evidence]
    return make_message(MessageRole.ASSISTANT, "\n".join(lines))


def summary_message(summary: str) -> Message:
    parsed = parse_summary_to_table(summary)
    if parsed is None:
        return make_message(MessageRole.ASSISTANT, f"**Summary:** {summary}")
    columns, rows = parsed
    table = TableResult(
        title="Analysis summary",
        columns=tuple(columns),
        rows=tuple(tuple(r) for r in rows),
    )
    return widget_to_message(table)


def layered_result_messages(body: dict) -> list[Message]:
    """
    Messages for a layered skill result, in display order.

    Overview entries first, then list tables (expandable from the deep
    layer), then a conclusion card when a known category is present, then
    the summary.
    """
    result = body.get("result") if isinstance(body.get("result"), dict) else {}
    layers = result.get("layers") or body.get("layers")
    if not isinstance(layers, dict):
        return []
    metadata = result.get("metadata") if isinstance(result.get("metadata"), dict) else {}
    skill_name = metadata.get("skillName") or body.get("skillName") or body.get("skillId")

    messages: list[Message] = []
    overview = layers.get("overview") or layers.get("L1")
    if isinstance(overview, dict) and overview:
        messages.extend(overview_messages(overview, skill_name))

    deep = layers.get("deep") or layers.get("L4")
    list_layer = layers.get("list") or layers.get("L2")
    if isinstance(list_layer, dict):
        messages.extend(list_messages(list_layer, deep))

    conclusion = result.get("conclusion") or extract_conclusion(overview)
    if isinstance(conclusion, dict) and conclusion.get("category") not in (None, "", "UNKNOWN"):
        messages.append(conclusion_card(conclusion))

    summary = body.get("summary")
    if summary:
        messages.append(summary_message(str(summary)))
    return messages
