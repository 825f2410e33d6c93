"""Bounded multi-step agent loop: think, execute, continue, retry or stop.

Every method here runs on the controlling loop's thread. Transport
callbacks arrive there too, so the workflow state needs no locking.
"""

import enum
import logging
import time
from typing import Callable

from . import fmt
from .conversation import Conversation
from .executor import (
    COMPLETION_MARKER,
    Executor,
    extract_command,
    extract_explanation,
    has_completion_marker,
    strip_completion_marker,
)
from .host import HostError
from .ledger import UndoRecord
from .report import (
    AgentError,
    ConcurrencyError,
    ConfigError,
    ExecutionError,
    WorkflowAbort,
)

logger = logging.getLogger(__name__)

MAX_STEPS = 10
RETRY_LIMIT = 1

UNDO_PHRASES = frozenset(
    {
        "undo",
        "undo that",
        "undo this",
        "revert",
        "revert that",
        "take that back",
        "undo last",
        "undo last action",
    }
)


class State(enum.Enum):
    IDLE = "idle"
    THINKING = "thinking"
    EXECUTING = "executing"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


class Outcome(enum.Enum):
    FINISHED = "finished"
    STEP_LIMIT = "step_limit"
    ABORTED = "aborted"
    ERROR = "error"
    CANCELLED = "cancelled"


EXIT_CODES = {
    Outcome.FINISHED: 0,
    Outcome.STEP_LIMIT: 2,
    Outcome.ABORTED: 1,
    Outcome.ERROR: 1,
    Outcome.CANCELLED: 130,
}


def is_undo_request(text: str) -> bool:
    return text.strip().lower() in UNDO_PHRASES


def error_hint(error: AgentError) -> str | None:
    """Operator hint for well-known provider failures."""
    message = str(error)
    status = getattr(error, "status", None)
    if status == 401 or "401" in message:
        return "Your API key may be invalid. Please check your configuration."
    if status == 429 or "429" in message:
        return "Rate limited. Please wait a moment and try again."
    if getattr(error, "cancelled", False) or "cancelled" in message:
        return "Request was cancelled."
    return None


def continue_message(output: list[str]) -> str:
    msg = "Step completed successfully."
    if output:
        msg += " Output:\n" + "\n".join(output)
    msg += (
        f"\n\nContinue with the next step, or respond with {COMPLETION_MARKER}"
        " if all steps are complete."
    )
    return msg


def retry_message(error: str) -> str:
    return (
        f"The command failed with this error: {error}"
        "\n\nPlease fix the command and try again."
    )


class Workflow:
    """Drives one user request to completion against a host.

    ``transport`` needs ``send``, ``cancel``, ``busy`` and ``api_key``.
    ``on_finish(outcome, reason)`` is called once per started workflow.
    After any outcome other than FINISHED, ``error`` holds the provider
    error, or a WorkflowAbort chained to the ExecutionError that caused it.
    """

    def __init__(
        self,
        transport,
        host,
        *,
        system_prompt: str = "",
        max_steps: int = MAX_STEPS,
        retry_limit: int = RETRY_LIMIT,
        executor: Executor | None = None,
        report=None,
        verbose: bool = True,
        on_finish: Callable[[Outcome, str], None] | None = None,
    ):
        self.transport = transport
        self.host = host
        self.system_prompt = system_prompt
        self.max_steps = max_steps
        self.retry_limit = retry_limit
        self.executor = executor or Executor()
        self.report = report
        self.verbose = verbose
        self.on_finish = on_finish

        self.conversation = Conversation(system_prompt, self._context)
        self.ledger = UndoRecord()

        self.state = State.IDLE
        self.step = 0
        self.retry_count = 0
        self.cancelled = False
        self.request = ""
        self.answer: str | None = None
        self.outcome: Outcome | None = None
        self.reason = ""
        self.error: AgentError | None = None
        # native undo entries reverted by a failure rollback, None if none ran
        self.rolled_back: int | None = None

        self._streamed = False
        self._sent_at = 0.0
        self._token_est = 0

        subscribe = getattr(host, "subscribe_history", None)
        if subscribe is not None:
            subscribe(self._on_history_changed)

    @property
    def active(self) -> bool:
        return self.state in (State.THINKING, State.EXECUTING)

    def _context(self) -> tuple[str, str]:
        if self.host is None:
            return "", ""
        return self.host.describe_state(), self.host.capability_catalog()

    # --- Entry points ---

    def submit(self, text: str) -> str | None:
        """Start a workflow, or perform an undo if the text asks for one."""
        if is_undo_request(text):
            return self.undo()
        self.start(text)
        return None

    def start(self, text: str) -> None:
        if self.active or self.transport.busy:
            raise ConcurrencyError("A request is already in progress")
        if self.host is None:
            raise ConfigError("No host attached. Cannot send request.")
        if not self.transport.api_key:
            raise ConfigError("No API key configured. Cannot send request.")

        logger.info("USER: %s", text)
        self.ledger.snapshot(self.host)
        self.ledger.description = text
        self.request = text
        self.answer = None
        self.outcome = None
        self.reason = ""
        self.error = None
        self.rolled_back = None
        self.conversation.add_user(text)
        self.step = 1
        self.retry_count = 0
        self.cancelled = False
        self._prune()
        self._send()

    def cancel(self) -> None:
        if not self.active:
            return
        self.cancelled = True
        self.transport.cancel()
        if self._streamed and self.verbose:
            fmt.stream_end()
        self._finish(Outcome.CANCELLED, "Cancelled by user.")

    def undo(self) -> str:
        if self.active:
            raise ConcurrencyError("Cannot undo while a workflow is running")
        if not self.ledger.valid:
            message = "Nothing to undo."
        else:
            description = self.ledger.description
            try:
                ok = self.ledger.restore(self.host)
            except HostError as e:
                logger.error("undo failed: %s", e)
                ok = False
            if not ok:
                message = "Undo failed."
            elif description:
                message = f"Undone: {description}"
            else:
                message = "Undone."
        logger.info("UNDO: %s", message)
        if self.verbose:
            fmt.info(message)
        return message

    def reset(self) -> None:
        if self.active:
            raise ConcurrencyError("Cannot reset while a workflow is running")
        self.conversation.clear()
        self.ledger.clear()
        self.state = State.IDLE
        self.step = 0
        self.retry_count = 0
        self.cancelled = False

    # --- Internals ---

    def _on_history_changed(self) -> None:
        if self.ledger.valid and self.host is not None:
            self.ledger.reconcile(self.host)

    def _prune(self) -> None:
        before = len(self.conversation)
        dropped = self.conversation.prune()
        if dropped and self.report is not None:
            self.report.record_prune(self.step, before, len(self.conversation))

    def _send(self) -> None:
        self.state = State.THINKING
        self._streamed = False
        turns = self.conversation.build_request_turns()
        self._token_est = self.conversation.estimate_tokens()
        if self.verbose:
            fmt.step_header(
                self.step, self.max_steps, self._token_est, retry=self.retry_count > 0
            )
        self._sent_at = time.monotonic()
        try:
            self.transport.send(
                self.system_prompt,
                turns,
                self._on_response,
                self._on_error,
                self._on_stream_delta,
            )
        except AgentError as e:
            logger.error("send failed: %s", e)
            if self.verbose:
                fmt.error(str(e))
            self._finish(Outcome.ERROR, "Workflow aborted due to error.", e)

    def _record_llm(self, outcome: str) -> None:
        elapsed = time.monotonic() - self._sent_at
        if self.verbose:
            fmt.llm_timing(elapsed, outcome)
        if self.report is not None:
            self.report.record_llm_call(
                self.step,
                elapsed,
                self._token_est,
                outcome,
                is_retry=self.retry_count > 0,
            )

    def _on_stream_delta(self, text: str) -> None:
        if self.cancelled:
            return
        self._streamed = True
        if self.verbose:
            fmt.stream_delta(text)

    def _on_response(self, text: str) -> None:
        if self.cancelled:
            return
        if self._streamed and self.verbose:
            fmt.stream_end()
        self._record_llm("ok")
        logger.info("ASSISTANT: %s", text)

        self.conversation.add_assistant(text)
        explanation = extract_explanation(text)
        command = extract_command(text)
        done = has_completion_marker(text)
        if done and explanation:
            explanation = strip_completion_marker(explanation)

        if explanation:
            self.answer = explanation
            if not self._streamed and self.verbose:
                fmt.assistant_text(explanation)

        if not command:
            if not explanation:
                self.answer = text
                if not self._streamed and self.verbose:
                    fmt.assistant_text(text)
            self._finish(Outcome.FINISHED, "Done.")
            return

        self._execute(command, done)

    def _execute(self, command: str, done: bool) -> None:
        self.state = State.EXECUTING
        if self.verbose:
            fmt.command(self.step, command)
        logger.info("EXEC step %d:\n%s", self.step, command)

        output: list[str] = []

        def on_output(line: str) -> None:
            output.append(line)
            if self.verbose:
                fmt.command_output(line)

        started = time.monotonic()
        try:
            ok, error = self.executor.execute(self.host, command, on_output)
        except AgentError as e:
            logger.error("cannot execute step %d: %s", self.step, e)
            if self.verbose:
                fmt.error(str(e))
            self._finish(Outcome.ERROR, "Workflow aborted due to error.", e)
            return
        elapsed = time.monotonic() - started
        if self.report is not None:
            self.report.record_execution(
                self.step, ok, elapsed, len(output), None if ok else error
            )

        if ok:
            if self.verbose:
                fmt.command_ok(elapsed)
            self.ledger.after_successful_execution(self.host)
            if done:
                self._finish(
                    Outcome.FINISHED, "All steps completed. (Type /undo to revert)"
                )
            elif self.step >= self.max_steps:
                if self.verbose:
                    fmt.warning(
                        f"Step limit ({self.max_steps}) reached. Stopping workflow."
                    )
                self._finish(
                    Outcome.STEP_LIMIT,
                    "Step limit reached. Partial work retained. (Type /undo to revert)",
                )
            else:
                self.step += 1
                self.retry_count = 0
                self.conversation.add_user(continue_message(output))
                self._prune()
                self._send()
            return

        logger.error("EXEC failed at step %d: %s", self.step, error)
        if self.verbose:
            fmt.command_error(error)

        if self.retry_count < self.retry_limit:
            self.retry_count += 1
            if self.report is not None:
                self.report.record_retry(self.step, error)
            self.conversation.add_user(retry_message(error))
            self._prune()
            self._send()
            return

        description = self.ledger.description
        native = 0
        if self.ledger.valid and self.host is not None:
            native = max(0, self.host.undo_depth() - self.ledger.undo_depth_before)
        try:
            restored = self.ledger.rollback_failure(self.host)
        except HostError as e:
            logger.error("rollback failed: %s", e)
            if self.verbose:
                fmt.error(f"Rollback failed: {e}")
            restored = False
        if restored:
            self.rolled_back = native
            if self.verbose:
                fmt.rollback(native, description)
            if self.report is not None:
                self.report.record_rollback(self.step, error, native)
        self._finish(
            Outcome.ABORTED,
            "Workflow aborted due to execution error.",
            ExecutionError(error),
        )

    def _on_error(self, error: AgentError) -> None:
        if self.cancelled:
            return
        if self._streamed and self.verbose:
            fmt.stream_end()
        self._record_llm("error")
        logger.error("ERROR: %s", error)
        if self.verbose:
            fmt.error(str(error))
            hint = error_hint(error)
            if hint:
                fmt.hint(hint)
        self._finish(Outcome.ERROR, "Workflow aborted due to error.", error)

    def _finish(
        self, outcome: Outcome, reason: str, cause: AgentError | None = None
    ) -> None:
        if outcome is Outcome.FINISHED:
            self.error = None
        elif outcome is Outcome.ERROR and cause is not None:
            self.error = cause
        else:
            abort = WorkflowAbort(reason)
            abort.__cause__ = cause
            self.error = abort
        if outcome is Outcome.CANCELLED:
            self.state = State.CANCELLED
        elif outcome in (Outcome.ABORTED, Outcome.ERROR):
            self.state = State.ABORTED
        else:
            self.state = State.IDLE
        self.outcome = outcome
        self.reason = reason
        logger.info("FINISH (%s): %s", outcome.value, reason)
        if self.verbose:
            fmt.completion(self.step, outcome.value, reason)
        if self.on_finish is not None:
            self.on_finish(outcome, reason)
