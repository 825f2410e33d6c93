"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Workflow structure ------------------------------------------------------


def step_header(step: int, max_steps: int, token_est: int, *, retry: bool = False) -> None:
    title = f"Step {step}/{max_steps} (~{token_est} tokens)"
    if retry:
        title += " retry"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, outcome: str) -> None:
    style = "green" if outcome == "ok" else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  outcome={escape(outcome)}", style=style)
    _console.print(text)


def completion(steps: int, outcome: str, reason: str) -> None:
    if outcome == "finished":
        _console.print(Text(f"  \u2713 {reason}", style="bold green"))
    elif outcome == "step_limit":
        _console.print(Text(f"  {reason}", style="bold yellow"))
    else:
        _console.print(
            Text(f"  {reason} (steps={steps}, outcome={outcome})", style="bold red")
        )


# -- Agent text --------------------------------------------------------------


def stream_delta(text: str) -> None:
    _console.print(Text(text, style="blue"), end="")


def stream_end() -> None:
    _console.print()


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [agent] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Commands ----------------------------------------------------------------


def command(step: int, code: str) -> None:
    header = Text()
    header.append(f"  \u25b6 Step {step}: executing command", style="bold magenta")
    _console.print(header)
    for line in code.splitlines():
        _console.print(Text(f"    {line}", style="dim"))


def command_output(line: str) -> None:
    _console.print(Text(f"    > {line}"))


def command_ok(elapsed: float) -> None:
    _console.print(Text(f"  \u2713 command succeeded  {elapsed:.2f}s", style="green"))


def command_error(msg: str) -> None:
    header = Text()
    header.append("  \u2717 Execution error: ", style="bold red")
    header.append(msg, style="red")
    _console.print(header)


def rollback(native_undos: int, description: str) -> None:
    line = Text()
    line.append("  \u21ba Rolled back", style="bold yellow")
    detail = f" {native_undos} host undo step(s)"
    if description:
        detail += f" for: {description}"
    line.append(detail, style="yellow")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def hint(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="yellow"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def state(text: str) -> None:
    for line in text.splitlines():
        _console.print(Text(f"  {line}", style="cyan"))


def repl_banner() -> None:
    _console.print(
        Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim")
    )
