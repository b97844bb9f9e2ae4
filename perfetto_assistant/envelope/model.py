"""Parsing of backend data envelopes into a tagged payload union.

The backend sends ``{meta, display, data}``. ``data`` comes in several
historical shapes (row objects, columns+rows, bare text, ...). The shape is
resolved here, once, into a payload with an explicit ``kind``; nothing
downstream inspects raw payload layout again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from perfetto_assistant.envelope.widgets import MetricChip, Severity, TableSummary


class EnvelopeError(ValueError):
    """Raised when an object is not a usable data envelope."""


@dataclass(frozen=True)
class EnvelopeIdentity:
    skill_id: str | None = None
    step_id: str | None = None
    source: str | None = None

    @property
    def dedup_key(self) -> str:
        if self.source:
            return self.source
        return f"{self.skill_id or 'unknown'}:{self.step_id or 'unknown'}"


@dataclass(frozen=True)
class DisplayHints:
    format: str = "table"
    title: str = ""
    layer: str | None = None
    group: str | None = None
    collapsible: bool = False
    default_collapsed: bool = False
    max_visible_rows: int | None = None
    metadata_fields: tuple[str, ...] = ()
    hidden_columns: tuple[str, ...] = ()
    columns: tuple[dict, ...] = ()


@dataclass(frozen=True)
class TablePayload:
    columns: tuple[str, ...]
    rows: tuple[tuple[Any, ...], ...]
    expandable: tuple[dict | None, ...] = ()
    summary: TableSummary | None = None
    kind: str = field(default="table", init=False)


@dataclass(frozen=True)
class TextPayload:
    text: str
    kind: str = field(default="text", init=False)


@dataclass(frozen=True)
class SummaryPayload:
    title: str
    content: str
    metrics: tuple[MetricChip, ...] = ()
    kind: str = field(default="summary", init=False)


@dataclass(frozen=True)
class ChartPayload:
    chart_type: str
    data: Any
    options: dict = field(default_factory=dict)
    kind: str = field(default="chart", init=False)


@dataclass(frozen=True)
class TimelinePayload:
    data: Any
    kind: str = field(default="timeline", init=False)


Payload = TablePayload | TextPayload | SummaryPayload | ChartPayload | TimelinePayload


@dataclass(frozen=True)
class DataEnvelope:
    identity: EnvelopeIdentity
    display: DisplayHints
    payload: Payload

    @property
    def dedup_key(self) -> str:
        return self.identity.dedup_key


def is_envelope(obj: Any) -> bool:
    return isinstance(obj, dict) and "meta" in obj and "data" in obj and "display" in obj


def _str_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _str_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(v) for v in value)


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_display(raw: Any) -> DisplayHints:
    display = raw if isinstance(raw, dict) else {}
    metadata_fields = display.get("metadataFields")
    if metadata_fields is None:
        metadata_fields = display.get("metadata_columns")
    hidden = display.get("hiddenColumns")
    if hidden is None:
        hidden = display.get("hidden_columns")
    columns = display.get("columns")
    return DisplayHints(
        format=str(display.get("format") or "table").lower(),
        title=str(display.get("title") or ""),
        layer=_str_or_none(display.get("layer")),
        group=_str_or_none(display.get("group")),
        collapsible=bool(display.get("collapsible")),
        default_collapsed=bool(display.get("defaultCollapsed")),
        max_visible_rows=_int_or_none(display.get("maxVisibleRows")),
        metadata_fields=_str_tuple(metadata_fields),
        hidden_columns=_str_tuple(hidden),
        columns=tuple(c for c in columns or () if isinstance(c, dict) and c.get("name")),
    )


def normalize_rows(data: Any) -> tuple[list[str], list[list[Any]]]:
    """
    Bring any tabular payload to ``(columns, rows)``.

    Accepts a list of row objects, or an object with ``columns`` and ``rows``
    where rows are lists or objects. Column order is first-seen order.
    """
    if isinstance(data, dict):
        columns = [str(c) for c in data.get("columns") or []]
        raw_rows = data.get("rows") or []
    elif isinstance(data, list):
        columns = []
        raw_rows = data
    else:
        return [], []

    if not columns:
        for row in raw_rows:
            if isinstance(row, dict):
                for key in row:
                    if key not in columns:
                        columns.append(str(key))
        if not columns and raw_rows and isinstance(raw_rows[0], (list, tuple)):
            columns = [f"col_{i + 1}" for i in range(len(raw_rows[0]))]

    rows = []
    for row in raw_rows:
        if isinstance(row, dict):
            rows.append([row.get(col) for col in columns])
        elif isinstance(row, (list, tuple)):
            values = list(row[: len(columns)])
            values.extend([None] * (len(columns) - len(values)))
            rows.append(values)
    return columns, rows


def parse_metrics(raw: Any) -> tuple[MetricChip, ...]:
    metrics = []
    for item in raw or ():
        if not isinstance(item, dict):
            continue
        label = item.get("label", item.get("name", ""))
        metrics.append(
            MetricChip(
                label=str(label),
                value=item.get("value"),
                unit=str(item.get("unit") or ""),
                severity=Severity.from_raw(item.get("severity", item.get("status"))),
            )
        )
    return tuple(metrics)


def parse_table_summary(raw: Any) -> TableSummary | None:
    if not isinstance(raw, dict):
        return None
    return TableSummary(
        title=str(raw.get("title") or ""),
        content=str(raw.get("content") or ""),
        metrics=parse_metrics(raw.get("metrics") or raw.get("keyMetrics")),
    )


def _find_key(keys: list[str], needles: tuple[str, ...]) -> str | None:
    for key in keys:
        lower = key.lower()
        if any(n in lower for n in needles):
            return key
    return None


def _metric_from_rows(data: Any, title: str) -> SummaryPayload | None:
    """Single-value metric taken from the first row of a tabular payload."""
    columns, rows = normalize_rows(data)
    if not rows:
        return None
    first = dict(zip(columns, rows[0]))
    value_key = _find_key(columns, ("value", "total", "avg"))
    if value_key is None:
        if len(columns) != 1:
            return None
        value_key = columns[0]
    value = first[value_key]
    if isinstance(value, float):
        value = f"{value:.2f}"
    chip = MetricChip(
        label=title or value_key,
        value=value,
        unit=str(first.get("unit") or ""),
        severity=Severity.from_raw(first.get("status") or first.get("severity")),
    )
    return SummaryPayload(title=title, content="", metrics=(chip,))


def _parse_payload(fmt: str, data: Any, title: str) -> Payload:
    body = data if isinstance(data, dict) else {}

    if fmt == "text":
        text = data if isinstance(data, str) else body.get("text") or body.get("content") or ""
        return TextPayload(text=str(text))

    if fmt in ("summary", "metric"):
        summary = body.get("summary")
        if isinstance(summary, dict):
            return SummaryPayload(
                title=str(summary.get("title") or title),
                content=str(summary.get("content") or ""),
                metrics=parse_metrics(summary.get("metrics")),
            )
        if fmt == "metric":
            derived = _metric_from_rows(data, title)
            if derived is not None:
                return derived
        return SummaryPayload(title=title, content=str(body.get("text") or ""))

    if fmt == "chart":
        chart = body.get("chart")
        if isinstance(chart, dict):
            options = chart.get("options")
            return ChartPayload(
                chart_type=str(chart.get("type") or "bar"),
                data=chart.get("data"),
                options=options if isinstance(options, dict) else {},
            )
        return ChartPayload(chart_type="bar", data=data)

    if fmt == "timeline":
        return TimelinePayload(data=data)

    columns, rows = normalize_rows(data)
    expandable = body.get("expandableData")
    return TablePayload(
        columns=tuple(columns),
        rows=tuple(tuple(r) for r in rows),
        expandable=tuple(expandable) if isinstance(expandable, list) else (),
        summary=parse_table_summary(body.get("summary")),
    )


def parse_envelope(raw: Any) -> DataEnvelope:
    """Validate a raw envelope and resolve its payload kind."""
    if not is_envelope(raw):
        raise EnvelopeError("object is not a data envelope (needs meta, display and data)")
    meta = raw["meta"] if isinstance(raw["meta"], dict) else {}
    identity = EnvelopeIdentity(
        skill_id=_str_or_none(meta.get("skillId")),
        step_id=_str_or_none(meta.get("stepId")),
        source=_str_or_none(meta.get("source")),
    )
    display = parse_display(raw["display"])
    payload = _parse_payload(display.format, raw["data"], display.title)
    return DataEnvelope(identity=identity, display=display, payload=payload)
