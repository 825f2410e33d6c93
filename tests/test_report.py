"""Tests for the JSON run report (--report) and the error taxonomy."""

import json

import pytest

from hostpilot.report import (
    AgentError,
    ConcurrencyError,
    ConfigError,
    ExecutionError,
    ParseError,
    ProtocolError,
    ReportCollector,
    TransportError,
    WorkflowAbort,
)


def _build(rc, **overrides):
    kwargs = dict(
        task="mute drums",
        model="m",
        settings={"max_steps": 10},
        outcome="finished",
        reason="Done.",
        answer="Muted.",
        exit_code=0,
        steps=1,
    )
    kwargs.update(overrides)
    return rc.build_report(**kwargs)


class TestErrors:
    @pytest.mark.parametrize(
        "cls",
        [ConfigError, ConcurrencyError, ParseError, ExecutionError, WorkflowAbort],
    )
    def test_all_are_agent_errors(self, cls):
        assert issubclass(cls, AgentError)

    def test_transport_error_flag(self):
        assert TransportError("x").cancelled is False
        assert TransportError("x", cancelled=True).cancelled is True

    def test_protocol_error_status(self):
        err = ProtocolError("API error (HTTP 429)", status=429)
        assert err.status == 429
        assert str(err) == "API error (HTTP 429)"


class TestReportCollector:
    def test_empty_report(self):
        r = _build(ReportCollector())
        assert r["version"] == 1
        assert r["task"] == "mute drums"
        assert r["result"] == {
            "outcome": "finished",
            "reason": "Done.",
            "answer": "Muted.",
            "exit_code": 0,
        }
        assert r["stats"]["steps"] == 1
        assert r["stats"]["llm_calls"] == 0
        assert r["timeline"] == []

    def test_llm_call_tracking(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 2.5, 1000, "ok")
        rc.record_llm_call(1, 1.3, 1500, "ok", is_retry=True)
        assert rc.llm_calls == 2
        assert rc.total_llm_time == pytest.approx(3.8)
        assert rc.max_step_seen == 1
        assert rc.events[0]["is_retry"] is False
        assert rc.events[1]["is_retry"] is True
        assert rc.events[1]["prompt_tokens_est"] == 1500

    def test_execution_tracking(self):
        rc = ReportCollector()
        rc.record_execution(1, True, 0.01, 2)
        rc.record_execution(2, False, 0.02, 0, "Host error: nope")
        assert rc.executions_succeeded == 1
        assert rc.executions_failed == 1
        assert "error" not in rc.events[0]
        assert rc.events[1]["error"] == "Host error: nope"
        assert rc.total_exec_time == pytest.approx(0.03)

    def test_retry_rollback_prune(self):
        rc = ReportCollector()
        rc.record_retry(2, "boom")
        rc.record_rollback(2, "boom", 3)
        rc.record_prune(4, 30, 12)
        stats = _build(rc)["stats"]
        assert stats["retries"] == 1
        assert stats["rollbacks"] == 1
        assert stats["prunes"] == 1
        assert rc.events[1]["native_undos"] == 3
        assert rc.events[2] == {
            "step": 4,
            "type": "prune",
            "turns_before": 30,
            "turns_after": 12,
        }

    def test_error_outcome(self):
        r = _build(
            ReportCollector(),
            outcome="error",
            reason="Workflow aborted due to error.",
            answer=None,
            exit_code=1,
        )
        assert r["result"]["outcome"] == "error"
        assert r["result"]["answer"] is None
        assert r["result"]["exit_code"] == 1

    def test_write_creates_valid_json(self, tmp_path):
        rc = ReportCollector()
        rc.record_llm_call(1, 0.5, 100, "ok")
        rc.finalize(
            task="t",
            model="m",
            settings={},
            outcome="finished",
            reason="Done.",
            answer="a",
            exit_code=0,
            steps=1,
        )
        path = tmp_path / "report.json"
        rc.write(str(path))
        data = json.loads(path.read_text())
        assert data["stats"]["llm_calls"] == 1
        assert data["timeline"][0]["type"] == "llm_call"
