"""Turn a parsed data envelope into zero or more display widgets."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from perfetto_assistant.envelope.formatters import (
    build_column_definitions,
    normalize_markdown_spacing,
)
from perfetto_assistant.envelope.model import (
    ChartPayload,
    DataEnvelope,
    SummaryPayload,
    TablePayload,
    TextPayload,
    TimelinePayload,
)
from perfetto_assistant.envelope.widgets import (
    ChartPoint,
    ChartSpec,
    MetricSpec,
    TableResult,
    TextBlock,
    Widget,
)

logger = logging.getLogger(__name__)

_MISSING = object()


def filter_columns(
    columns: Iterable[str],
    rows: Iterable[Iterable[Any]],
    drop: Iterable[str],
) -> tuple[list[str], list[list[Any]]]:
    """
    Remove the ``drop`` columns from a grid.

    Remaining columns keep their source order. Applying the same ``drop`` set
    twice gives the same result as applying it once.
    """
    columns = list(columns)
    drop_set = set(drop)
    keep = [i for i, col in enumerate(columns) if col not in drop_set]
    kept_columns = [columns[i] for i in keep]
    kept_rows = []
    for row in rows:
        row = list(row)
        kept_rows.append([row[i] if i < len(row) else None for i in keep])
    return kept_columns, kept_rows


def lift_metadata(
    columns: list[str],
    rows: list[list[Any]],
    fields: Iterable[str],
) -> dict:
    """Values of ``fields`` that are identical on every row, for a header block."""
    metadata: dict = {}
    if not rows:
        return metadata
    for name in fields:
        if name not in columns:
            continue
        idx = columns.index(name)
        first = rows[0][idx] if idx < len(rows[0]) else None
        if all((row[idx] if idx < len(row) else None) == first for row in rows[1:]):
            metadata[name] = first
        else:
            logger.debug("Metadata field %s varies across rows; not lifted", name)
    return metadata


def hidden_columns(envelope: DataEnvelope) -> list[str]:
    """Columns kept out of the grid: hidden definitions, hidden list, metadata fields."""
    display = envelope.display
    hidden = [d["name"] for d in display.columns if d.get("hidden") is True]
    for name in (*display.hidden_columns, *display.metadata_fields):
        if name not in hidden:
            hidden.append(name)
    return hidden


def _render_table(envelope: DataEnvelope, payload: TablePayload) -> list[Widget]:
    display = envelope.display
    if not payload.rows:
        return []
    columns = list(payload.columns)
    rows = [list(r) for r in payload.rows]
    drop = hidden_columns(envelope)
    metadata = lift_metadata(columns, rows, display.metadata_fields)
    visible, visible_rows = filter_columns(columns, rows, drop)
    definitions = build_column_definitions(visible, list(display.columns))
    return [
        TableResult(
            title=display.title,
            columns=tuple(visible),
            rows=tuple(tuple(r) for r in visible_rows),
            column_definitions=tuple(definitions),
            metadata=metadata,
            expandable=payload.expandable,
            summary=payload.summary,
            step_id=envelope.identity.step_id,
            group=display.group,
            collapsible=display.collapsible,
            default_collapsed=display.default_collapsed,
            max_visible_rows=display.max_visible_rows,
        )
    ]


def _render_summary(envelope: DataEnvelope, payload: SummaryPayload) -> list[Widget]:
    body = normalize_markdown_spacing(payload.content)
    if not body and not payload.metrics:
        return []
    return [
        MetricSpec(
            title=payload.title or envelope.display.title,
            body=body,
            metrics=payload.metrics,
        )
    ]


def _as_number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _find_key(keys: Iterable[str], needles: tuple[str, ...]) -> str | None:
    for key in keys:
        if any(n in key.lower() for n in needles):
            return key
    return None


def chart_series(data: Any) -> tuple[ChartPoint, ...]:
    """
    Best-effort normalisation of chart data into label/value points.

    Understands a list of objects (label-ish and value-ish keys picked by
    name), ``{labels, values}`` and ``{labels, datasets:[{data}]}``. Anything
    else yields no points.
    """
    if isinstance(data, list) and data and isinstance(data[0], dict):
        keys = list(data[0])
        label_key = _find_key(keys, ("label", "name", "type"))
        value_key = _find_key(keys, ("value", "count", "total"))
        if label_key is None or value_key is None:
            return ()
        return tuple(
            ChartPoint(label=str(item.get(label_key) or "Unknown"), value=_as_number(item.get(value_key)))
            for item in data
            if isinstance(item, dict)
        )
    if isinstance(data, dict):
        labels = data.get("labels")
        values = data.get("values", _MISSING)
        if values is _MISSING:
            datasets = data.get("datasets")
            if isinstance(datasets, list) and datasets and isinstance(datasets[0], dict):
                values = datasets[0].get("data")
        if isinstance(labels, list) and isinstance(values, list):
            return tuple(
                ChartPoint(label=str(label), value=_as_number(value))
                for label, value in zip(labels, values)
            )
    return ()


def _render_chart(envelope: DataEnvelope, payload: ChartPayload) -> list[Widget]:
    return [
        ChartSpec(
            title=envelope.display.title,
            chart_type=payload.chart_type,
            series=chart_series(payload.data),
            raw=payload.data,
        )
    ]


def render(envelope: DataEnvelope) -> list[Widget]:
    """Dispatch on the payload kind decided at parse time."""
    payload = envelope.payload
    if isinstance(payload, TablePayload):
        return _render_table(envelope, payload)
    if isinstance(payload, SummaryPayload):
        return _render_summary(envelope, payload)
    if isinstance(payload, TextPayload):
        if not payload.text:
            return []
        return [TextBlock(title=envelope.display.title, content=payload.text)]
    if isinstance(payload, ChartPayload):
        return _render_chart(envelope, payload)
    if isinstance(payload, TimelinePayload):
        return [ChartSpec(title=envelope.display.title, chart_type="timeline", raw=payload.data)]
    logger.warning("No renderer for payload kind %r", getattr(payload, "kind", None))
    return []
