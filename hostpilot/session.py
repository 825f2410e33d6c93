"""Public library API for hostpilot: Session class and Result dataclass."""

import asyncio
from dataclasses import dataclass
from pathlib import Path

from .executor import Executor
from .history import HistoryEntry, append_history
from .report import ReportCollector
from .transport import (
    DEFAULT_BASE_URL,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL,
    Transport,
)
from .workflow import EXIT_CODES, MAX_STEPS, Outcome, Workflow

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"

DRAIN_INTERVAL = 0.01


@dataclass
class Result:
    """Result of one workflow run."""

    answer: str | None
    outcome: str
    reason: str
    steps: int
    exit_code: int
    turns: list[dict]
    report: dict | None
    error: str | None = None


class Session:
    """Programmatic interface to the hostpilot workflow.

    Owns a private asyncio loop that acts as the controlling thread: run()
    drives it until the workflow finishes, so transport callbacks are
    processed on the caller's thread. Conversation history carries over
    between run() calls until reset().
    """

    def __init__(
        self,
        host=None,
        *,
        base_dir: str = ".",
        model: str = DEFAULT_MODEL,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        stream: bool = True,
        max_steps: int = MAX_STEPS,
        system_prompt: str | None = None,
        sandbox: bool = True,
        verbose: bool = False,
        history: bool = True,
        config_dir: "Path | None" = None,
        opener=None,
    ):
        self.host = host
        self.base_dir = base_dir
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.stream = stream
        self.max_steps = max_steps
        self.system_prompt = system_prompt
        self.sandbox = sandbox
        self.verbose = verbose
        self.history = history
        self.config_dir = config_dir
        self.opener = opener

        self._loop: asyncio.AbstractEventLoop | None = None
        self._transport: Transport | None = None
        self._workflow: Workflow | None = None
        self._finished: asyncio.Future | None = None

    def _setup(self) -> None:
        """One-time setup: resolve credentials and system prompt, build components."""
        if self._workflow is not None:
            return

        from .config import resolve_api_key

        api_key = self.api_key or resolve_api_key(self.config_dir)
        system_prompt = self.system_prompt
        if system_prompt is None:
            system_prompt = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")

        self._loop = asyncio.new_event_loop()
        self._transport = Transport(
            self._loop,
            api_key,
            model=self.model,
            max_tokens=self.max_tokens,
            base_url=self.base_url,
            stream=self.stream,
            opener=self.opener,
        )
        self._workflow = Workflow(
            self._transport,
            self.host,
            system_prompt=system_prompt,
            max_steps=self.max_steps,
            executor=Executor(sandbox=self.sandbox),
            verbose=self.verbose,
            on_finish=self._on_finish,
        )

        if self.verbose:
            from . import fmt

            fmt.init()

    @property
    def workflow(self) -> Workflow:
        self._setup()
        return self._workflow

    def _on_finish(self, outcome: Outcome, reason: str) -> None:
        if self._finished is not None and not self._finished.done():
            self._finished.set_result(outcome)

    def _drain(self) -> None:
        """Spin the loop until the transport has delivered its last callback."""
        while self._transport.busy:
            self._loop.run_until_complete(asyncio.sleep(DRAIN_INTERVAL))

    def run(self, request: str, *, report: bool = False) -> Result:
        """Run one workflow to completion.

        Raises ConfigError (no host or API key) or ConcurrencyError before
        anything is sent. Ctrl-C while waiting cancels the workflow.
        """
        self._setup()
        workflow = self._workflow

        collector = ReportCollector() if report else None
        workflow.report = collector
        self._finished = self._loop.create_future()

        workflow.start(request)
        try:
            self._loop.run_until_complete(self._finished)
        except KeyboardInterrupt:
            self.cancel()
        finally:
            self._finished = None

        outcome = workflow.outcome or Outcome.CANCELLED
        exit_code = EXIT_CODES[outcome]

        if self.history:
            append_history(
                self.base_dir,
                HistoryEntry(
                    request=request,
                    outcome=outcome.value,
                    steps=workflow.step,
                    answer=workflow.answer,
                    reason=workflow.reason,
                    rolled_back=workflow.rolled_back,
                    undoable=workflow.ledger.valid,
                ),
            )

        report_dict = None
        if collector:
            report_dict = collector.finalize(
                task=request,
                model=self.model,
                settings={
                    "max_steps": self.max_steps,
                    "max_tokens": self.max_tokens,
                    "stream": self.stream,
                    "sandbox": self.sandbox,
                },
                outcome=outcome.value,
                reason=workflow.reason,
                answer=workflow.answer,
                exit_code=exit_code,
                steps=workflow.step,
            )

        return Result(
            answer=workflow.answer,
            outcome=outcome.value,
            reason=workflow.reason,
            steps=workflow.step,
            exit_code=exit_code,
            turns=[
                {"role": t.role, "content": t.content}
                for t in workflow.conversation.turns
            ],
            report=report_dict,
            error=str(workflow.error) if workflow.error else None,
        )

    def undo(self) -> str:
        """Revert the last workflow's changes. Returns a status message."""
        self._setup()
        return self._workflow.undo()

    def cancel(self) -> None:
        """Cancel a running workflow and wait for the transport to settle."""
        if self._workflow is None:
            return
        self._workflow.cancel()
        self._drain()

    def reset(self) -> None:
        """Clear conversation and undo state. Next run() starts fresh."""
        if self._workflow is not None:
            self._workflow.reset()

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
        if self._loop is not None and not self._loop.is_closed():
            self._loop.close()
        self._transport = None
        self._workflow = None
        self._loop = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
