"""Markdown rendering of the structured conclusion contract.

Backends have shipped the contract with both snake_case and camelCase keys;
each logical field is looked up through its list of accepted aliases.
"""

from __future__ import annotations

import math
import re
from typing import Any

ALIASES = {
    "conclusions": ("conclusion", "conclusions"),
    "clusters": ("clusters",),
    "evidence_chain": ("evidence_chain", "evidenceChain"),
    "uncertainties": ("uncertainties",),
    "next_steps": ("next_steps", "nextSteps"),
    "metadata": ("metadata",),
    "confidence": ("confidencePercent", "confidence"),
    "rounds": ("rounds",),
    "conclusion_id": ("conclusionId", "conclusion_id", "conclusion"),
}

MAX_CONCLUSIONS = 3
MAX_CLUSTERS = 5
MAX_EVIDENCE = 12
MAX_LIST_ITEMS = 6


def pick(obj: Any, field: str, default: Any = None) -> Any:
    """First present alias of ``field`` in ``obj``."""
    if not isinstance(obj, dict):
        return default
    for key in ALIASES.get(field, (field,)):
        value = obj.get(key)
        if value is not None:
            return value
    return default


def _pick_list(obj: Any, field: str) -> list:
    value = pick(obj, field)
    return value if isinstance(value, list) else []


def to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(re.sub(r"[%％]", "", value).strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def to_percent(value: Any) -> float | None:
    """Fractions (<= 1) become percentages; larger numbers already are."""
    number = to_number(value)
    if number is None:
        return None
    return number * 100 if number <= 1 else number


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _conclusion_line(item: Any) -> str:
    if isinstance(item, str):
        return item.strip() or "Conclusion missing"
    statement = _text(pick(item, "statement"))
    if not statement:
        parts = []
        for key, label in (
            ("trigger", "Trigger (direct cause)"),
            ("supply", "Supply constraint (resource bottleneck)"),
            ("amplification", "Amplification path"),
        ):
            text = _text(pick(item, key))
            if text:
                parts.append(f"{label}: {text}")
        statement = "; ".join(parts)
    confidence = to_percent(pick(item, "confidence"))
    suffix = f" (confidence: {round(confidence)}%)" if confidence is not None else ""
    return f"{statement or 'Conclusion missing'}{suffix}"


def _cluster_line(item: Any) -> str:
    cluster = _text(pick(item, "cluster")) or "K?"
    description = _text(pick(item, "description"))
    label = f"{cluster}: {description}" if description else cluster
    metrics = []
    frames = to_number(pick(item, "frames"))
    if frames is not None:
        metrics.append(f"{round(frames)} frames")
    percentage = to_percent(pick(item, "percentage"))
    if percentage is not None:
        metrics.append(f"{percentage:.1f}%")
    return f"- {label} ({', '.join(metrics)})" if metrics else f"- {label}"


def _evidence_lines(item: Any, idx: int) -> list[str]:
    cid = _text(pick(item, "conclusion_id")) or f"C{idx + 1}"
    evidence = pick(item, "evidence")
    if isinstance(evidence, list):
        return [f"- {cid}: {_text(e)}" for e in evidence if _text(e)]
    text = _text(
        pick(item, "text") or evidence or pick(item, "statement") or pick(item, "data")
    )
    return [f"- {cid}: {text}"] if text else []


def _bullets(items: list) -> list[str]:
    texts = [_text(item) for item in items[:MAX_LIST_ITEMS]]
    return [f"- {t}" for t in texts if t] or ["- None"]


def render_conclusion_contract(contract: Any) -> str | None:
    """Markdown for a conclusion contract, or None when it carries no signal."""
    if not isinstance(contract, dict):
        return None

    conclusions = _pick_list(contract, "conclusions")
    clusters = _pick_list(contract, "clusters")
    evidence_chain = _pick_list(contract, "evidence_chain")
    uncertainties = _pick_list(contract, "uncertainties")
    next_steps = _pick_list(contract, "next_steps")
    metadata = pick(contract, "metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    if not (conclusions or clusters or evidence_chain or uncertainties or next_steps):
        return None

    lines = ["## Conclusions (most likely first)"]
    if conclusions:
        for idx, item in enumerate(conclusions[:MAX_CONCLUSIONS]):
            lines.append(f"{idx + 1}. {_conclusion_line(item)}")
    else:
        lines.append("1. Conclusion missing (insufficient evidence)")
    lines.append("")

    lines.append("## Jank clusters (largest first)")
    if clusters:
        lines.extend(_cluster_line(item) for item in clusters[:MAX_CLUSTERS])
    else:
        lines.append("- None")
    lines.append("")

    lines.append("## Evidence chain")
    evidence = []
    for idx, item in enumerate(evidence_chain[:MAX_EVIDENCE]):
        evidence.extend(_evidence_lines(item, idx))
    lines.extend(evidence or ["- Evidence chain missing"])
    lines.append("")

    lines.append("## Uncertainties and counter-examples")
    lines.extend(_bullets(uncertainties))
    lines.append("")

    lines.append("## Next steps (highest information gain)")
    lines.extend(_bullets(next_steps))

    confidence = to_percent(pick(metadata, "confidence", pick(contract, "confidence")))
    rounds = to_number(pick(metadata, "rounds", pick(contract, "rounds")))
    if confidence is not None or rounds is not None:
        lines.append("")
        lines.append("## Analysis metadata")
        if confidence is not None:
            lines.append(f"- Confidence: {round(confidence)}%")
        if rounds is not None:
            lines.append(f"- Rounds: {round(rounds)}")

    return "\n".join(lines)
