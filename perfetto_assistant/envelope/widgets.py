"""Display shapes produced by the envelope pipeline.

These are plain data: a UI (the CLI console, or anything else) decides how to
draw them. Table, chart and metric shapes double as message attachments and
therefore round-trip through ``to_dict`` / ``from_dict``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Severity(str, Enum):
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"

    @classmethod
    def from_raw(cls, value: Any) -> "Severity":
        """Map any backend severity label onto the fixed 3-level scale."""
        text = str(value or "").strip().lower()
        if text in ("critical", "error", "severe", "high"):
            return cls.CRITICAL
        if text in ("warning", "warn", "medium"):
            return cls.WARNING
        return cls.GOOD


@dataclass(frozen=True)
class MetricChip:
    label: str
    value: Any
    unit: str = ""
    severity: Severity = Severity.GOOD

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "value": self.value,
            "unit": self.unit,
            "severity": self.severity.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MetricChip":
        return cls(
            label=str(data.get("label", "")),
            value=data.get("value"),
            unit=str(data.get("unit") or ""),
            severity=Severity.from_raw(data.get("severity")),
        )


@dataclass(frozen=True)
class TableSummary:
    title: str
    content: str
    metrics: tuple[MetricChip, ...] = ()

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "content": self.content,
            "metrics": [m.to_dict() for m in self.metrics],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TableSummary":
        return cls(
            title=str(data.get("title", "")),
            content=str(data.get("content", "")),
            metrics=tuple(MetricChip.from_dict(m) for m in data.get("metrics") or ()),
        )


@dataclass(frozen=True)
class TableResult:
    """A grid of rows with an optional header block, row details and summary."""

    title: str
    columns: tuple[str, ...]
    rows: tuple[tuple[Any, ...], ...]
    column_definitions: tuple[dict, ...] = ()
    metadata: dict = field(default_factory=dict)
    expandable: tuple[dict | None, ...] = ()
    summary: TableSummary | None = None
    query: str = ""
    step_id: str | None = None
    group: str | None = None
    collapsible: bool = False
    default_collapsed: bool = False
    max_visible_rows: int | None = None

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> dict:
        return {
            "type": "table",
            "title": self.title,
            "columns": list(self.columns),
            "rows": [list(r) for r in self.rows],
            "columnDefinitions": list(self.column_definitions),
            "metadata": dict(self.metadata),
            "expandable": list(self.expandable),
            "summary": self.summary.to_dict() if self.summary else None,
            "query": self.query,
            "stepId": self.step_id,
            "group": self.group,
            "collapsible": self.collapsible,
            "defaultCollapsed": self.default_collapsed,
            "maxVisibleRows": self.max_visible_rows,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TableResult":
        summary = data.get("summary")
        return cls(
            title=str(data.get("title", "")),
            columns=tuple(data.get("columns") or ()),
            rows=tuple(tuple(r) for r in data.get("rows") or ()),
            column_definitions=tuple(data.get("columnDefinitions") or ()),
            metadata=dict(data.get("metadata") or {}),
            expandable=tuple(data.get("expandable") or ()),
            summary=TableSummary.from_dict(summary) if isinstance(summary, dict) else None,
            query=str(data.get("query") or ""),
            step_id=data.get("stepId"),
            group=data.get("group"),
            collapsible=bool(data.get("collapsible")),
            default_collapsed=bool(data.get("defaultCollapsed")),
            max_visible_rows=data.get("maxVisibleRows"),
        )


@dataclass(frozen=True)
class MetricSpec:
    """Title, narrative body and a row of severity-coloured metric chips."""

    title: str
    body: str = ""
    metrics: tuple[MetricChip, ...] = ()

    def to_dict(self) -> dict:
        return {
            "type": "metric",
            "title": self.title,
            "body": self.body,
            "metrics": [m.to_dict() for m in self.metrics],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MetricSpec":
        return cls(
            title=str(data.get("title", "")),
            body=str(data.get("body", "")),
            metrics=tuple(MetricChip.from_dict(m) for m in data.get("metrics") or ()),
        )


@dataclass(frozen=True)
class ChartPoint:
    label: str
    value: float

    def to_dict(self) -> dict:
        return {"label": self.label, "value": self.value}


@dataclass(frozen=True)
class ChartSpec:
    """Normalised chart description handed to a visualisation collaborator.

    ``chart_type`` is ``"timeline"`` for timeline envelopes; ``raw`` keeps
    whatever the backend sent when it could not be normalised into points.
    """

    title: str
    chart_type: str
    series: tuple[ChartPoint, ...] = ()
    raw: Any = None

    def to_dict(self) -> dict:
        return {
            "type": "chart",
            "title": self.title,
            "chartType": self.chart_type,
            "series": [p.to_dict() for p in self.series],
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChartSpec":
        return cls(
            title=str(data.get("title", "")),
            chart_type=str(data.get("chartType", "bar")),
            series=tuple(
                ChartPoint(label=str(p.get("label", "")), value=float(p.get("value") or 0))
                for p in data.get("series") or ()
            ),
            raw=data.get("raw"),
        )


@dataclass(frozen=True)
class TextBlock:
    title: str
    content: str


Widget = TableResult | MetricSpec | ChartSpec | TextBlock
