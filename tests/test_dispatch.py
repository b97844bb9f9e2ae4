import unittest

from perfetto_assistant.dispatch import EventDispatcher
from perfetto_assistant.dispatch.contract import render_conclusion_contract, to_percent
from perfetto_assistant.envelope.widgets import TableResult
from perfetto_assistant.models import (
    AnalysisSession,
    MessageKind,
    MessageRole,
    ReportLink,
    make_message,
)
from perfetto_assistant.stream import StatusUpdate
from perfetto_assistant.stream.connection import StatusKind


def progress(message):
    return {"type": "progress", "data": {"message": message}}


def completed(**data):
    return {"type": "analysis_completed", "data": data}


def data_event(*envelopes):
    return {"type": "data", "envelope": list(envelopes)}


TABLE_ENVELOPE = {
    "meta": {"skillId": "scrolling", "stepId": "jank_frames"},
    "display": {"format": "table", "title": "Jank frames"},
    "data": {"columns": ["frame_id", "dur_ms"], "rows": [[1, 20.5]]},
}


class DispatchTestCase(unittest.TestCase):
    def setUp(self):
        self.session = AnalysisSession("s1", "0_1_t", "t", 0, 0)
        self.changes = []
        self.dispatcher = EventDispatcher(
            self.session, backend_url="http://backend:3000/", on_change=self.changes.append
        )
        self.dispatcher.begin_run()

    @property
    def messages(self):
        return self.session.messages

    def contents(self):
        return [m.content for m in self.messages]


class TestPlaceholder(DispatchTestCase):
    def test_consecutive_progress_keeps_one_line(self):
        for i in range(5):
            self.dispatcher.handle("progress", progress(f"step {i}"))
        self.assertEqual(len(self.messages), 1)
        self.assertIs(self.messages[0].kind, MessageKind.PLACEHOLDER)
        self.assertEqual(self.messages[0].content, "step 4")

    def test_status_events_share_the_placeholder(self):
        self.dispatcher.handle("progress", progress("A"))
        self.dispatcher.handle("round_start", {"data": {"round": 2, "maxRounds": 4}})
        self.dispatcher.handle("stage_start", {"data": {"message": "Collecting frames"}})
        self.assertEqual(len(self.messages), 1)
        self.assertEqual(self.messages[0].content, "Collecting frames")

    def test_progress_then_completed_leaves_two_messages(self):
        self.messages.append(make_message(MessageRole.USER, "why is it janky?"))
        self.dispatcher.handle("progress", progress("A"))
        self.dispatcher.handle("progress", progress("B"))
        result = self.dispatcher.handle("analysis_completed", completed(answer="done"))

        self.assertTrue(result.is_terminal)
        self.assertEqual(len(self.messages), 2)
        self.assertIn("done", self.messages[-1].content)
        self.assertFalse(any(c in ("A", "B") for c in self.contents()))

    def test_analysis_plan_is_kept(self):
        self.dispatcher.handle("progress", progress("thinking"))
        self.dispatcher.handle("progress", {"data": {
            "phase": "analysis_plan",
            "plan": {"objective": "Find jank", "steps": [{"order": 2, "title": "B"}, {"order": 1, "title": "A"}]},
        }})
        self.dispatcher.handle("progress", progress("running"))
        self.assertEqual(len(self.messages), 2)
        plan = self.messages[0].content
        self.assertIn("Objective: Find jank", plan)
        self.assertLess(plan.index("**A**"), plan.index("**B**"))
        self.assertTrue(self.messages[1].is_placeholder)


class TestCompletionLatch(DispatchTestCase):
    def test_conclusion_then_completed(self):
        result = self.dispatcher.handle("conclusion", {"data": {"conclusion": "early"}})
        self.assertTrue(result.conclusion_pending)
        self.assertEqual(self.messages, [])
        self.dispatcher.handle("analysis_completed", completed(answer="final"))
        self.assertEqual(self.contents(), ["final"])

    def test_completed_then_conclusion(self):
        self.dispatcher.handle("analysis_completed", completed(answer="final"))
        result = self.dispatcher.handle("conclusion", {"data": {"conclusion": "late"}})
        self.assertFalse(result.conclusion_pending)
        self.dispatcher.handle("analysis_completed", completed(answer="again"))
        self.assertEqual(self.contents(), ["final"])

    def test_completed_without_answer_uses_conclusion(self):
        self.dispatcher.handle("conclusion", {"data": {"conclusion": "from conclusion"}})
        self.dispatcher.handle("analysis_completed", completed())
        self.assertEqual(self.contents(), ["from conclusion"])

    def test_timed_out_conclusion_then_late_report(self):
        self.dispatcher.handle("conclusion", {"data": {"conclusion": "answer"}})
        self.assertTrue(self.dispatcher.complete_from_conclusion())
        self.assertFalse(self.dispatcher.complete_from_conclusion())
        self.dispatcher.handle("analysis_completed", completed(answer="answer", reportUrl="/reports/7"))

        self.assertEqual(len(self.messages), 1)
        self.assertEqual(self.messages[0].attachment, ReportLink("http://backend:3000/reports/7"))

    def test_report_link_is_attached(self):
        self.dispatcher.handle("analysis_completed", completed(answer="ok", reportUrl="/r/1"))
        self.assertEqual(self.messages[0].attachment.url, "http://backend:3000/r/1")

    def test_conclusion_contract_is_rendered(self):
        contract = {
            "conclusions": [{"statement": "Main thread blocked on binder", "confidence": 0.8}],
            "clusters": [{"cluster": "K1", "description": "binder", "frames": 12, "percentage": 0.4}],
            "evidenceChain": [{"conclusion_id": "C1", "evidence": ["binder 40ms"]}],
            "metadata": {"rounds": 2},
        }
        self.dispatcher.handle("analysis_completed", completed(conclusionContract=contract))
        content = self.messages[0].content
        self.assertIn("1. Main thread blocked on binder (confidence: 80%)", content)
        self.assertIn("- K1: binder (12 frames, 40.0%)", content)
        self.assertIn("- C1: binder 40ms", content)
        self.assertIn("- Rounds: 2", content)

    def test_agent_driven_metadata_is_appended(self):
        self.dispatcher.handle("analysis_completed", {
            "architecture": "agent-driven",
            "data": {
                "answer": "root cause",
                "confidence": 0.9,
                "rounds": 3,
                "hypotheses": [{"status": "confirmed", "description": "GC pressure"}],
            },
        })
        content = self.messages[0].content
        self.assertIn("- Confidence: 90%", content)
        self.assertIn("- Confirmed hypotheses: GC pressure", content)


class TestDedup(DispatchTestCase):
    def test_same_envelope_renders_once_per_run(self):
        self.dispatcher.handle("data", data_event(TABLE_ENVELOPE))
        self.dispatcher.handle("data", data_event(TABLE_ENVELOPE, TABLE_ENVELOPE))
        self.assertEqual(len(self.messages), 1)
        self.assertIsInstance(self.messages[0].attachment, TableResult)

        self.dispatcher.begin_run()
        self.dispatcher.handle("data", {"envelope": TABLE_ENVELOPE})
        self.assertEqual(len(self.messages), 2)

    def test_invalid_envelopes_are_dropped(self):
        self.dispatcher.handle("data", data_event({"meta": {}}, TABLE_ENVELOPE))
        self.assertEqual(len(self.messages), 1)

    def test_layered_result_dedup_by_skill(self):
        event = {"data": {
            "skillId": "scrolling",
            "skillName": "Scrolling",
            "layers": {
                "overview": {
                    "metrics": {"data": [{"fps": 58, "janky": 3}]},
                    "problem_category": "APP",
                    "problem_component": "MAIN_THREAD",
                    "confidence": 0.7,
                    "root_cause_summary": "Long inflate",
                },
                "list": {
                    "jank_frames": {
                        "display": {"expandable": True, "metadataFields": ["session_id"]},
                        "data": [{"frame_id": 1, "session_id": 5, "dur_ms": 20}],
                    }
                },
                "deep": {"5": {"frame_1": {"data": {"diagnosis_summary": "inflate"}}}},
            },
            "summary": "frames: 120, janky: 3",
        }}
        self.dispatcher.handle("skill_layered_result", event)
        self.dispatcher.handle("skill_layered_result", event)

        attachments = [m.attachment for m in self.messages]
        titles = [a.title for a in attachments if isinstance(a, TableResult)]
        self.assertEqual(titles, ["Metrics (Scrolling)", "Jank Frames (1 rows)", "Analysis summary"])
        jank = attachments[1]
        self.assertEqual(jank.columns, ("frame_id", "dur_ms"))
        self.assertEqual(jank.metadata, {"session_id": 5})
        self.assertEqual(jank.expandable[0]["sections"], {"diagnosis_summary": "inflate"})
        card = self.messages[2].content
        self.assertIn("Application issue", card)
        self.assertIn("Main thread", card)
        self.assertIn("70%", card)


class TestErrors(DispatchTestCase):
    def test_step_errors_flush_after_answer(self):
        self.dispatcher.handle("skill_error", {"skillId": "cpu", "data": {"stepId": "freq", "error": "no table"}})
        self.dispatcher.handle("skill_error", {"skillId": "cpu", "data": {"error": "timeout"}})
        self.assertEqual(self.messages, [])

        self.dispatcher.handle("analysis_completed", completed(answer="answer"))
        self.assertEqual(len(self.messages), 2)
        self.assertEqual(self.messages[0].content, "answer")
        summary = self.messages[1].content
        self.assertIn("2 error(s)", summary)
        self.assertIn("- no table (step: freq)", summary)
        self.assertEqual(self.dispatcher.collected_errors, [])

    def test_error_event_is_terminal(self):
        self.dispatcher.handle("progress", progress("working"))
        self.dispatcher.handle("skill_error", {"skillId": "cpu", "data": {"error": "x"}})
        result = self.dispatcher.handle("error", {"data": {"error": "backend crashed"}})
        self.assertTrue(result.is_terminal)
        self.assertEqual(self.messages[0].content, "**Error:** backend crashed")
        self.assertIn("1 error(s)", self.messages[1].content)
        self.assertEqual(len(self.messages), 2)

    def test_error_event_without_text_still_reports(self):
        self.dispatcher.handle("progress", progress("working"))
        result = self.dispatcher.handle("error", {"data": {}})
        self.assertTrue(result.is_terminal)
        self.assertEqual(self.contents(), ["**Error:** analysis failed"])

        self.dispatcher.begin_run()
        self.dispatcher.handle("error", {"data": {"message": "trace processor crashed"}})
        self.assertEqual(self.contents()[-1], "**Error:** trace processor crashed")

    def test_finish_run_flushes_and_drops_placeholder(self):
        self.dispatcher.handle("progress", progress("working"))
        self.dispatcher.handle("skill_error", {"skillId": "cpu", "data": {"error": "x"}})
        self.dispatcher.finish_run()
        self.assertEqual(len(self.messages), 1)
        self.assertIn("1 error(s)", self.messages[0].content)

    def test_unknown_and_silent_events_are_ignored(self):
        for event_type in ("brand_new_event", "thought", "connected", "sql_generated"):
            result = self.dispatcher.handle(event_type, {"data": {"message": "x"}})
            self.assertFalse(result.is_terminal)
        self.assertTrue(self.dispatcher.handle("end", {}).stop_loading)
        self.assertEqual(self.messages, [])
        self.assertEqual(self.changes, [])

    def test_malformed_payloads_do_not_raise(self):
        self.dispatcher.handle("progress", ["not", "a", "dict"])
        self.dispatcher.handle("sql_executed", {"data": {"result": "nope"}})
        self.dispatcher.handle("skill_layered_result", {"data": {"layers": "nope"}})
        self.assertEqual(self.messages, [])


class TestConnectionStatus(DispatchTestCase):
    def test_reconnect_notice_is_replaced_not_stacked(self):
        self.dispatcher.handle("progress", progress("working"))
        for attempt in (1, 2, 3):
            self.dispatcher.show_connection_status(
                StatusUpdate(StatusKind.RECONNECTING, attempt=attempt, max_retries=5, delay_ms=2000)
            )
        notices = [m for m in self.messages if m.kind is MessageKind.CONNECTION_STATUS]
        self.assertEqual(len(notices), 1)
        self.assertIn("attempt 3/5", notices[0].content)

        self.dispatcher.clear_connection_status()
        self.assertFalse(any(m.kind is MessageKind.CONNECTION_STATUS for m in self.messages))

    def test_failure_names_attempt_count(self):
        self.dispatcher.show_connection_status(
            StatusUpdate(StatusKind.RECONNECTING, attempt=4, max_retries=5, delay_ms=1000)
        )
        self.dispatcher.show_connection_failed(
            StatusUpdate(StatusKind.FAILED, attempt=5, max_retries=5, error="refused")
        )
        self.assertEqual(len(self.messages), 1)
        self.assertEqual(self.messages[0].role, MessageRole.SYSTEM)
        self.assertIn("after 5 attempts: refused", self.messages[0].content)


class TestOtherEvents(DispatchTestCase):
    def test_sql_executed_attaches_result(self):
        self.dispatcher.handle("sql_executed", {"data": {
            "sql": "select 1 as x",
            "result": {"columns": ["x"], "rows": [[1]], "rowCount": 1},
        }})
        table = self.messages[0].attachment
        self.assertEqual(table.query, "select 1 as x")
        self.assertIn("**1**", self.messages[0].content)

    def test_intervention_lifecycle(self):
        self.dispatcher.handle("intervention_required", {"data": {
            "interventionId": "iv-1",
            "type": "ambiguity",
            "options": [{"id": "a"}],
            "context": {"triggerReason": "Two candidate processes"},
        }})
        self.assertTrue(self.dispatcher.intervention.active)
        self.assertEqual(self.dispatcher.intervention.timeout_ms, 60000)
        self.assertIn("Two candidate processes", self.messages[-1].content)

        self.dispatcher.handle("intervention_resolved", {"data": {"action": "continue"}})
        self.assertFalse(self.dispatcher.intervention.active)
        self.assertIn("continue", self.messages[-1].content)

    def test_diagnostics_grouped_by_severity(self):
        self.dispatcher.handle("skill_diagnostics", {"data": {"diagnostics": [
            {"severity": "warning", "message": "w1"},
            {"severity": "critical", "message": "c1", "suggestions": ["s1"]},
        ]}})
        content = self.messages[0].content
        self.assertLess(content.index("c1"), content.index("w1"))
        self.assertIn("Suggestion: s1", content)


class TestContract(unittest.TestCase):
    def test_no_signal_renders_nothing(self):
        self.assertIsNone(render_conclusion_contract({"metadata": {"rounds": 1}}))
        self.assertIsNone(render_conclusion_contract("text"))

    def test_aliases_and_fallbacks(self):
        content = render_conclusion_contract({
            "conclusion": [{"trigger": "GC", "supply": "little cores"}],
            "next_steps": ["capture heap profile"],
            "confidencePercent": "75%",
        })
        self.assertIn("Trigger (direct cause): GC; Supply constraint (resource bottleneck): little cores", content)
        self.assertIn("- capture heap profile", content)
        self.assertIn("- Confidence: 75%", content)
        self.assertIn("- Evidence chain missing", content)

    def test_to_percent(self):
        self.assertEqual(to_percent(0.5), 50)
        self.assertEqual(to_percent("80"), 80)
        self.assertIsNone(to_percent("n/a"))


if __name__ == "__main__":
    unittest.main()
