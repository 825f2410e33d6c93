"""Error taxonomy and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the workflow or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for missing or invalid configuration (no API key, no host, etc.)."""


class ConcurrencyError(AgentError):
    """Raised when a request is submitted while another one is in flight."""


class TransportError(AgentError):
    """Connection, timeout or cancellation failure talking to the provider."""

    def __init__(self, message: str, *, cancelled: bool = False):
        super().__init__(message)
        self.cancelled = cancelled


class ProtocolError(AgentError):
    """The provider answered with a non-2xx status or an error event."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class ParseError(AgentError):
    """The transfer succeeded but no response text could be extracted."""


class ExecutionError(AgentError):
    """A generated command faulted inside the interpreter or the host."""


class WorkflowAbort(AgentError):
    """A workflow stopped early: retries exhausted, step cap or cancellation."""


class ReportCollector:
    """Accumulates events during a workflow for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_exec_time = 0.0
        self.executions_succeeded = 0
        self.executions_failed = 0
        self.retries = 0
        self.rollbacks = 0
        self.prunes = 0
        self.max_step_seen = 0

    def record_llm_call(
        self,
        step: int,
        duration: float,
        token_est: int,
        outcome: str,
        *,
        is_retry: bool = False,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if step > self.max_step_seen:
            self.max_step_seen = step
        self.events.append(
            {
                "step": step,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
                "outcome": outcome,
                "is_retry": is_retry,
            }
        )

    def record_execution(
        self,
        step: int,
        succeeded: bool,
        duration: float,
        output_lines: int,
        error: str | None = None,
    ):
        self.total_exec_time += duration
        if succeeded:
            self.executions_succeeded += 1
        else:
            self.executions_failed += 1
        event: dict = {
            "step": step,
            "type": "execution",
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "output_lines": output_lines,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_retry(self, step: int, error: str):
        self.retries += 1
        self.events.append({"step": step, "type": "retry", "error": error})

    def record_rollback(self, step: int, reason: str, native_undos: int):
        self.rollbacks += 1
        self.events.append(
            {
                "step": step,
                "type": "rollback",
                "reason": reason,
                "native_undos": native_undos,
            }
        )

    def record_prune(self, step: int, turns_before: int, turns_after: int):
        self.prunes += 1
        self.events.append(
            {
                "step": step,
                "type": "prune",
                "turns_before": turns_before,
                "turns_after": turns_after,
            }
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        settings: dict,
        outcome: str,
        reason: str,
        answer: str | None,
        exit_code: int,
        steps: int,
    ) -> dict:
        result: dict = {
            "outcome": outcome,
            "reason": reason,
            "answer": answer,
            "exit_code": exit_code,
        }
        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "settings": settings,
            "result": result,
            "stats": {
                "steps": steps,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_exec_time_s": round(self.total_exec_time, 3),
                "executions_succeeded": self.executions_succeeded,
                "executions_failed": self.executions_failed,
                "retries": self.retries,
                "rollbacks": self.rollbacks,
                "prunes": self.prunes,
            },
            "timeline": self.events,
        }

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report
