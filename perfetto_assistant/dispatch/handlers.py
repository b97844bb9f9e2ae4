"""Event dispatch: one handler per stream event type, mutating a session.

Handlers run strictly in stream order. The dispatcher owns the per-run state
(dedup keys, completion latch, collected step errors) and is reset by
``begin_run`` at the start of every user-initiated analysis.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from perfetto_assistant.dispatch.contract import render_conclusion_contract
from perfetto_assistant.dispatch.results import layered_result_messages, widget_to_message
from perfetto_assistant.envelope import EnvelopeError, parse_envelope, render
from perfetto_assistant.envelope.model import is_envelope, normalize_rows, parse_table_summary
from perfetto_assistant.envelope.widgets import TableResult
from perfetto_assistant.models import (
    AnalysisSession,
    Message,
    MessageKind,
    MessageRole,
    ReportLink,
    make_message,
    now_ms,
)
from perfetto_assistant.stream.connection import StatusUpdate

logger = logging.getLogger(__name__)

SILENT_EVENTS = frozenset({
    "connected",
    "sql_generated",
    "step_completed",
    "thought",
    "worker_thought",
    "finding",
    "agent_dialogue",
    "agent_response",
    "focus_updated",
    "incremental_scope",
})

AGENT_DRIVEN_ARCHITECTURES = ("v2-agent-driven", "agent-driven")
DEFAULT_INTERVENTION_TIMEOUT_MS = 60_000


@dataclass(frozen=True)
class HandlerResult:
    is_terminal: bool = False
    stop_loading: bool = False
    # A ``conclusion`` arrived; the final answer is pending ``analysis_completed``.
    conclusion_pending: bool = False


@dataclass(frozen=True)
class CollectedError:
    skill_id: str
    step_id: str | None
    error: str
    timestamp: int


@dataclass
class InterventionState:
    active: bool = False
    intervention_id: str | None = None
    type: str | None = None
    options: list = field(default_factory=list)
    context: dict = field(default_factory=dict)
    timeout_ms: int | None = None


def _body(data: Any) -> dict:
    body = data.get("data") if isinstance(data, dict) else None
    return body if isinstance(body, dict) else {}


def _percent(value: Any) -> int:
    try:
        return round(float(value or 0) * 100)
    except (TypeError, ValueError):
        return 0


def format_analysis_plan(plan: Any, fallback: str | None = None) -> str:
    lines = ["### Analysis plan confirmed"]
    if not isinstance(plan, dict):
        lines += ["", fallback or "Collect evidence first, then form root-cause hypotheses."]
        return "\n".join(lines)

    objective = plan.get("objective")
    if isinstance(objective, str) and objective.strip():
        lines += ["", f"Objective: {objective.strip()}"]
    mode = plan.get("mode")
    if isinstance(mode, str) and mode.strip():
        lines += ["", f"Mode: `{mode.strip()}`"]
    strategy = plan.get("strategy")
    if isinstance(strategy, dict):
        lines += ["", f"Strategy: **{strategy.get('name') or strategy.get('id') or 'unknown'}**"]

    steps = [s for s in plan.get("steps") or [] if isinstance(s, dict)]
    if steps:
        lines += ["", "**Steps**"]
        for step in sorted(steps, key=lambda s: _order(s.get("order"))):
            lines.append(
                f"{_order(step.get('order'))}. **{step.get('title') or 'Step'}**: {step.get('action') or ''}"
            )

    evidence = plan.get("evidence")
    if isinstance(evidence, list) and evidence:
        lines += ["", "**Evidence to collect**"]
        lines += [f"- {item}" for item in evidence]

    lines += ["", "Evidence is collected before any root-cause hypothesis."]
    return "\n".join(lines)


def _order(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def format_diagnostics(diagnostics: list) -> str:
    by_severity: dict[str, list[dict]] = {"critical": [], "warning": [], "info": []}
    for item in diagnostics:
        if isinstance(item, dict) and item.get("severity") in by_severity:
            by_severity[item["severity"]].append(item)

    lines = ["**Diagnostics**", ""]
    if by_severity["critical"]:
        lines.append("**Critical:**")
        for d in by_severity["critical"]:
            lines.append(f"- {d.get('message', '')}")
            if d.get("suggestions"):
                lines.append(f"  *Suggestion: {'; '.join(map(str, d['suggestions']))}*")
        lines.append("")
    if by_severity["warning"]:
        lines.append("**Warnings:**")
        lines += [f"- {d.get('message', '')}" for d in by_severity["warning"]]
        lines.append("")
    if by_severity["info"]:
        lines.append("**Notes:**")
        lines += [f"- {d.get('message', '')}" for d in by_severity["info"]]
    return "\n".join(lines).strip()


class EventDispatcher:
    """
    Applies stream events to an ``AnalysisSession``'s message list.

    ``on_change`` is called with the session after every mutation so the
    caller can persist it.
    """

    def __init__(
        self,
        session: AnalysisSession,
        *,
        backend_url: str = "",
        on_change: Callable[[AnalysisSession], None] | None = None,
    ):
        self.session = session
        self.backend_url = backend_url.rstrip("/")
        self.on_change = on_change
        self.seen: set[str] = set()
        self.completion_handled = False
        self.pending_conclusion: str | None = None
        self.collected_errors: list[CollectedError] = []
        self.intervention = InterventionState()
        self._final_message_id: str | None = None
        self._handlers: dict[str, Callable[[dict], HandlerResult]] = {
            "progress": self._on_progress,
            "sql_executed": self._on_sql_executed,
            "skill_section": self._on_skill_section,
            "skill_diagnostics": self._on_skill_diagnostics,
            "skill_layered_result": self._on_skill_layered_result,
            "skill_data": self._on_skill_data,
            "data": self._on_data,
            "hypothesis_generated": self._on_hypothesis_generated,
            "round_start": self._on_round_start,
            "stage_start": self._on_stage_start,
            "agent_task_dispatched": self._on_agent_task_dispatched,
            "synthesis_complete": self._on_synthesis_complete,
            "strategy_decision": self._on_strategy_decision,
            "strategy_selected": self._on_strategy_selected,
            "strategy_fallback": self._on_strategy_fallback,
            "intervention_required": self._on_intervention_required,
            "intervention_resolved": self._on_intervention_resolved,
            "intervention_timeout": self._on_intervention_timeout,
            "conclusion": self._on_conclusion,
            "analysis_completed": self._on_analysis_completed,
            "skill_error": self._on_skill_error,
            "error": self._on_error,
            "end": self._on_end,
        }

    # -- run lifecycle -------------------------------------------------------

    def begin_run(self) -> None:
        """Reset per-run state; called once per user query."""
        self.seen.clear()
        self.completion_handled = False
        self.pending_conclusion = None
        self.collected_errors.clear()
        self._final_message_id = None

    def finish_run(self) -> None:
        """Flush anything the run left behind: status lines and collected errors."""
        changed = self._remove_kind(MessageKind.CONNECTION_STATUS)
        changed = self._drop_placeholder() or changed
        if self.collected_errors:
            self._flush_errors()
        elif changed:
            self._changed()

    def handle(self, event_type: str, data: Any) -> HandlerResult:
        """Route one event. Unknown types and malformed payloads are logged and dropped."""
        if event_type in SILENT_EVENTS:
            logger.debug("Event %s (not displayed)", event_type)
            return HandlerResult()
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Ignoring unknown event type %s", event_type)
            return HandlerResult()
        try:
            return handler(data if isinstance(data, dict) else {})
        except (EnvelopeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Dropping malformed %s event: %s", event_type, exc)
            return HandlerResult()

    # -- message list primitives ---------------------------------------------

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self.session)

    def _drop_placeholder(self) -> bool:
        messages = self.session.messages
        if messages and messages[-1].is_placeholder:
            messages.pop()
            return True
        return False

    def _clear_placeholder(self) -> None:
        if self._drop_placeholder():
            self._changed()

    def _remove_kind(self, kind: MessageKind) -> bool:
        messages = self.session.messages
        kept = [m for m in messages if m.kind is not kind]
        if len(kept) == len(messages):
            return False
        messages[:] = kept
        return True

    def _add(self, *messages: Message) -> None:
        """Append finished messages, replacing a trailing placeholder."""
        if not messages:
            return
        self._drop_placeholder()
        self.session.messages.extend(messages)
        self._changed()

    def _say(self, content: str, role: MessageRole = MessageRole.ASSISTANT) -> Message:
        message = make_message(role, content)
        self._add(message)
        return message

    def _placeholder(self, content: str) -> None:
        """Show ``content`` as the single rolling in-progress line."""
        self._drop_placeholder()
        self.session.messages.append(
            make_message(MessageRole.ASSISTANT, content, kind=MessageKind.PLACEHOLDER)
        )
        self._changed()

    def _claim(self, key: str) -> bool:
        """Record ``key`` for this run; False when it was already rendered."""
        if key in self.seen:
            logger.debug("Skipping duplicate result %s", key)
            return False
        self.seen.add(key)
        return True

    # -- connection status lines ---------------------------------------------

    def show_connection_status(self, update: StatusUpdate) -> None:
        """Reconnect notice, replacing (never stacking) the previous one."""
        self._remove_kind(MessageKind.CONNECTION_STATUS)
        seconds = update.delay_ms / 1000
        self.session.messages.append(
            make_message(
                MessageRole.SYSTEM,
                f"Connection lost, reconnecting in {seconds:.1f}s "
                f"(attempt {update.attempt}/{update.max_retries})...",
                kind=MessageKind.CONNECTION_STATUS,
            )
        )
        self._changed()

    def clear_connection_status(self) -> None:
        if self._remove_kind(MessageKind.CONNECTION_STATUS):
            self._changed()

    def show_connection_failed(self, update: StatusUpdate) -> None:
        self._remove_kind(MessageKind.CONNECTION_STATUS)
        detail = f": {update.error}" if update.error else ""
        self._say(
            f"**Error:** lost connection to the analysis service after "
            f"{update.attempt} attempts{detail}",
            MessageRole.SYSTEM,
        )

    # -- completion ----------------------------------------------------------

    def complete_from_conclusion(self) -> bool:
        """
        Promote a pending ``conclusion`` to the final answer.

        Used when ``analysis_completed`` never arrives. Honours the same
        latch, so at most one final answer exists per run.
        """
        if self.completion_handled or not self.pending_conclusion:
            return False
        self._finalize(self.pending_conclusion, None)
        return True

    def _finalize(self, content: str, report_url: str | None) -> None:
        self.completion_handled = True
        attachment = ReportLink(self._report_link(report_url)) if report_url else None
        message = make_message(MessageRole.ASSISTANT, content, attachment=attachment)
        self._final_message_id = message.id
        self._add(message)

    def _report_link(self, report_url: str) -> str:
        if report_url.startswith(("http://", "https://")):
            return report_url
        return f"{self.backend_url}{report_url}"

    def attach_report(self, report_url: str) -> bool:
        """Attach a report link to the already-added final message."""
        if self._final_message_id is None:
            return False
        messages = self.session.messages
        for i, message in enumerate(messages):
            if message.id == self._final_message_id:
                if message.attachment is not None:
                    return False
                messages[i] = message.with_attachment(ReportLink(self._report_link(report_url)))
                self._changed()
                return True
        return False

    def _flush_errors(self) -> None:
        errors, self.collected_errors = self.collected_errors, []
        by_skill: dict[str, list[CollectedError]] = {}
        for err in errors:
            by_skill.setdefault(err.skill_id, []).append(err)

        lines = [f"### {len(errors)} error(s) during analysis", ""]
        for skill_id, skill_errors in by_skill.items():
            lines.append(f"**Skill: {skill_id}**")
            for err in skill_errors:
                step = f" (step: {err.step_id})" if err.step_id else ""
                lines.append(f"- {err.error}{step}")
            lines.append("")
        lines.append("*Other results are unaffected, but some data may be missing.*")
        self._say("\n".join(lines))

    # -- handlers ------------------------------------------------------------

    def _on_progress(self, data: dict) -> HandlerResult:
        body = _body(data)
        if body.get("phase") == "analysis_plan":
            self._say(format_analysis_plan(body.get("plan"), body.get("message")))
        elif body.get("message"):
            self._placeholder(str(body["message"]))
        return HandlerResult()

    def _on_sql_executed(self, data: dict) -> HandlerResult:
        body = _body(data)
        result = body.get("result")
        if not isinstance(result, dict):
            return HandlerResult()
        columns, rows = normalize_rows(result)
        row_count = result.get("rowCount") or len(rows)
        expandable = result.get("expandableData")
        table = TableResult(
            title="",
            columns=tuple(columns),
            rows=tuple(tuple(r) for r in rows),
            expandable=tuple(expandable) if isinstance(expandable, list) else (),
            summary=parse_table_summary(result.get("summary")),
            query=str(body.get("sql") or ""),
        )
        self._add(make_message(MessageRole.ASSISTANT, f"Query returned **{row_count}** rows",
                               attachment=table))
        return HandlerResult()

    def _on_skill_section(self, data: dict) -> HandlerResult:
        section = _body(data)
        if not section:
            return HandlerResult()
        columns, rows = normalize_rows(section)
        if not rows:
            self._clear_placeholder()
            return HandlerResult()
        expandable = section.get("expandableData")
        table = TableResult(
            title=f"{section.get('sectionTitle', '')} "
                  f"({section.get('sectionIndex', '?')}/{section.get('totalSections', '?')})",
            columns=tuple(columns),
            rows=tuple(tuple(r) for r in rows),
            expandable=tuple(expandable) if isinstance(expandable, list) else (),
            summary=parse_table_summary(section.get("summary")),
        )
        self._add(widget_to_message(table))
        return HandlerResult()

    def _on_skill_diagnostics(self, data: dict) -> HandlerResult:
        diagnostics = _body(data).get("diagnostics")
        if isinstance(diagnostics, list) and diagnostics:
            self._say(format_diagnostics(diagnostics))
        return HandlerResult()

    def _on_skill_layered_result(self, data: dict) -> HandlerResult:
        body = _body(data)
        result = body.get("result") if isinstance(body.get("result"), dict) else {}
        if not (result.get("layers") or body.get("layers")):
            return HandlerResult()
        metadata = result.get("metadata") if isinstance(result.get("metadata"), dict) else {}
        skill_id = body.get("skillId") or metadata.get("skillId") or "unknown"
        if not self._claim(f"skill_layered_result:{skill_id}"):
            return HandlerResult()
        messages = layered_result_messages(body)
        if messages:
            self._add(*messages)
        else:
            self._clear_placeholder()
        return HandlerResult()

    def _on_skill_data(self, data: dict) -> HandlerResult:
        logger.warning("Deprecated skill_data event received")
        body = _body(data)
        if not body:
            return HandlerResult()
        return self._on_skill_layered_result({
            "data": {
                "skillId": body.get("skillId"),
                "skillName": body.get("skillName"),
                "layers": body.get("layers"),
            }
        })

    def _on_data(self, data: dict) -> HandlerResult:
        raw = data.get("envelope")
        for item in raw if isinstance(raw, list) else [raw]:
            if not is_envelope(item):
                logger.warning("Dropping invalid data envelope")
                continue
            try:
                envelope = parse_envelope(item)
            except EnvelopeError as exc:
                logger.warning("Dropping invalid data envelope: %s", exc)
                continue
            if not self._claim(envelope.dedup_key):
                continue
            widgets = render(envelope)
            if widgets:
                self._add(*(widget_to_message(w) for w in widgets))
            else:
                self._clear_placeholder()
        return HandlerResult()

    def _on_hypothesis_generated(self, data: dict) -> HandlerResult:
        body = _body(data)
        hypotheses = body.get("hypotheses")
        if not isinstance(hypotheses, list) or not hypotheses:
            return HandlerResult()
        numbered = [f"{i + 1}. {h}" for i, h in enumerate(hypotheses)]
        if body.get("evidenceBased") is True:
            lines = [f"### {len(hypotheses)} evidence-based hypotheses to verify"]
            summary = body.get("evidenceSummary")
            if isinstance(summary, list) and summary:
                lines += ["", "**First-round evidence**"] + [f"- {s}" for s in summary]
            lines += ["", "**Hypotheses**"] + numbered
            lines += ["", "_Next: verify and narrow down the hypotheses._"]
        else:
            lines = [f"### Generated {len(hypotheses)} hypotheses"] + numbered
            lines += ["", "_Verifying hypotheses..._"]
        self._say("\n".join(lines))
        return HandlerResult()

    def _on_round_start(self, data: dict) -> HandlerResult:
        body = _body(data)
        if body:
            round_no = body.get("round") or 1
            max_rounds = body.get("maxRounds") or 5
            message = body.get("message") or f"Analysis round {round_no}"
            self._placeholder(f"{message} ({round_no}/{max_rounds})")
        return HandlerResult()

    def _on_stage_start(self, data: dict) -> HandlerResult:
        message = _body(data).get("message")
        if message:
            self._placeholder(str(message))
        return HandlerResult()

    def _on_agent_task_dispatched(self, data: dict) -> HandlerResult:
        body = _body(data)
        if body:
            message = body.get("message") or f"Dispatched {body.get('taskCount') or 0} tasks"
            agents = body.get("agents") or []
            if agents:
                message += "\n\nAgents: " + ", ".join(f"`{a}`" for a in agents)
            self._placeholder(message)
        return HandlerResult()

    def _on_synthesis_complete(self, data: dict) -> HandlerResult:
        body = _body(data)
        if body:
            message = body.get("message") or "Synthesizing results"
            self._placeholder(
                f"{message}\n\nConfirmed {body.get('confirmedFindings') or 0} findings, "
                f"updated {body.get('updatedHypotheses') or 0} hypotheses"
            )
        return HandlerResult()

    def _on_strategy_decision(self, data: dict) -> HandlerResult:
        body = _body(data)
        if body:
            strategy = body.get("strategy") or "continue"
            message = body.get("message") or f"Strategy: {strategy}"
            self._placeholder(f"{message} (confidence: {_percent(body.get('confidence'))}%)")
        return HandlerResult()

    def _on_strategy_selected(self, data: dict) -> HandlerResult:
        body = _body(data)
        if body:
            reasoning = body.get("reasoning") or "Starting the analysis pipeline..."
            self._placeholder(
                f"Selected strategy: **{body.get('strategyName')}** "
                f"({_percent(body.get('confidence'))}%)\n\n_{reasoning}_"
            )
        return HandlerResult()

    def _on_strategy_fallback(self, data: dict) -> HandlerResult:
        body = _body(data)
        if body:
            reason = body.get("reason") or "No preset strategy matched, starting adaptive analysis..."
            self._placeholder(f"Using hypothesis-driven analysis\n\n_{reason}_")
        return HandlerResult()

    def _on_intervention_required(self, data: dict) -> HandlerResult:
        body = _body(data)
        if not body.get("interventionId"):
            logger.warning("intervention_required without interventionId")
            return HandlerResult()
        context = body.get("context") if isinstance(body.get("context"), dict) else {}
        self.intervention = InterventionState(
            active=True,
            intervention_id=str(body["interventionId"]),
            type=body.get("type") or "agent_request",
            options=list(body.get("options") or []),
            context=context,
            timeout_ms=body.get("timeout") or DEFAULT_INTERVENTION_TIMEOUT_MS,
        )
        reason = context.get("triggerReason") or "The analysis needs your input to continue."
        self._say(f"**Your decision is needed**\n\n{reason}", MessageRole.SYSTEM)
        return HandlerResult()

    def _on_intervention_resolved(self, data: dict) -> HandlerResult:
        body = _body(data)
        if not body:
            return HandlerResult()
        self.intervention = InterventionState()
        self._say(f"Decision received: **{body.get('action')}**\n\n_Analysis continues..._")
        return HandlerResult()

    def _on_intervention_timeout(self, data: dict) -> HandlerResult:
        self.intervention = InterventionState()
        action = _body(data).get("defaultAction") or "abort"
        self._say(f"**Response timed out**\n\nApplied default action: **{action}**",
                  MessageRole.SYSTEM)
        return HandlerResult()

    def _on_conclusion(self, data: dict) -> HandlerResult:
        body = _body(data)
        content = body.get("conclusion") or body.get("content") or body.get("message")
        if self.completion_handled or not content:
            return HandlerResult()
        self.pending_conclusion = str(content)
        logger.debug("Conclusion received; waiting for analysis_completed")
        return HandlerResult(conclusion_pending=True)

    def _on_analysis_completed(self, data: dict) -> HandlerResult:
        body = _body(data)
        report_url = body.get("reportUrl")
        if not report_url and body.get("reportError"):
            logger.warning("Report generation failed: %s", body["reportError"])

        if self.completion_handled:
            if report_url:
                self.attach_report(str(report_url))
            if self.collected_errors:
                self._flush_errors()
            return HandlerResult(is_terminal=True, stop_loading=True)

        answer = (
            body.get("answer")
            or body.get("conclusion")
            or render_conclusion_contract(body.get("conclusionContract"))
            or self.pending_conclusion
        )
        if answer:
            content = str(answer)
            if data.get("architecture") in AGENT_DRIVEN_ARCHITECTURES:
                content += self._agent_metadata(body, content)
            self._finalize(content, str(report_url) if report_url else None)
        else:
            self._clear_placeholder()

        if self.collected_errors:
            self._flush_errors()
        return HandlerResult(is_terminal=True, stop_loading=True)

    def _agent_metadata(self, body: dict, content: str) -> str:
        hypotheses = body.get("hypotheses")
        if not isinstance(hypotheses, list) or "Analysis metadata" in content:
            return ""
        confirmed = [
            h.get("description", "") for h in hypotheses
            if isinstance(h, dict) and h.get("status") == "confirmed"
        ]
        confidence = body.get("confidence") or 0
        if not confirmed and not confidence:
            return ""
        lines = [
            "",
            "",
            "---",
            "**Analysis metadata**",
            f"- Confidence: {_percent(confidence)}%",
            f"- Rounds: {body.get('rounds') or 1}",
        ]
        if confirmed:
            lines.append(f"- Confirmed hypotheses: {', '.join(confirmed)}")
        return "\n".join(lines)

    def _on_skill_error(self, data: dict) -> HandlerResult:
        body = _body(data)
        error = CollectedError(
            skill_id=str(data.get("skillId") or body.get("skillId") or "unknown"),
            step_id=body.get("stepId"),
            error=str(body.get("error") or "Unknown error"),
            timestamp=now_ms(),
        )
        logger.debug("Collected skill error: %s", error)
        self.collected_errors.append(error)
        return HandlerResult()

    def _on_error(self, data: dict) -> HandlerResult:
        body = _body(data)
        error = (
            body.get("error") or data.get("error") or body.get("message") or data.get("message")
            or "analysis failed"
        )
        self._say(f"**Error:** {error}")
        if self.collected_errors:
            self._flush_errors()
        return HandlerResult(is_terminal=True, stop_loading=True)

    def _on_end(self, data: dict) -> HandlerResult:
        return HandlerResult(stop_loading=True)
