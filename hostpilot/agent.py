import argparse
import importlib
import logging
import os
import sys
from pathlib import Path

from importlib import metadata

from . import fmt
from .config import (
    _UNSET,
    CONFIG_KEYS,
    apply_config_to_args,
    config_to_session_kwargs,
    generate_config,
    load_config,
    resolve_api_key,
)
from .report import AgentError, ConfigError, ReportCollector
from .session import Session
from .workflow import is_undo_request

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def load_host(spec: str):
    """Instantiate a host from a ``module:callable`` spec."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"host must look like 'module:callable', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"cannot import host module {module_name!r}: {e}") from e
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"{spec!r} is not a callable host factory")
    return factory()


def setup_logging(path: str) -> logging.Handler:
    """Send hostpilot's debug log to ``path``."""
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(logging.DEBUG)
    pkg_logger = logging.getLogger("hostpilot")
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(logging.DEBUG)
    return handler


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="hostpilot",
        usage="%(prog)s [options] <request>\n       %(prog)s --repl [options] [request]",
        description="Drive a live host application through short agent-written commands, "
        "with one-step undo for everything the agent changed.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "request", nargs="?", default=None, help="What the agent should do."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of handling a single request.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (hostpilot.toml) variant.",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default: claude-sonnet-4-20250514).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Provider base URL (default: https://api.anthropic.com).",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=_UNSET,
        help="Maximum tokens per response (default: 2048).",
    )
    parser.add_argument(
        "--no-stream",
        dest="stream",
        action="store_false",
        default=_UNSET,
        help="Wait for complete responses instead of streaming them.",
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=_UNSET,
        help="Maximum executed steps per request (default: 10).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=_UNSET,
        metavar="MODULE:CALLABLE",
        help="Host factory (default: hostpilot.host:InMemoryHost).",
    )
    parser.add_argument(
        "--no-sandbox",
        dest="sandbox",
        action="store_false",
        default=_UNSET,
        help="Give commands the full set of Python builtins.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Directory for hostpilot.toml and .hostpilot/ (default: current directory).",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a debug log of requests, replies and executions to FILE.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--no-history",
        action="store_true",
        default=_UNSET,
        help="Don't write responses to .hostpilot/HISTORY.md",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("hostpilot")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    if not args.repl and args.request is None:
        parser.error("request is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    try:
        config = load_config(Path(args.base_dir))
        apply_config_to_args(args, config)
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    args.config_dir = config["config_dir"]
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color)
    if args.log_file:
        try:
            setup_logging(args.log_file)
        except OSError as e:
            fmt.error(f"cannot open log file {args.log_file}: {e}")
            sys.exit(1)

    try:
        exit_code = _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        logger.error("run failed: %s", e)
        if args.report:
            report = ReportCollector()
            report.finalize(
                task=args.request or "",
                model=args.model,
                settings=_report_settings(args),
                outcome="error",
                reason=str(e),
                answer=None,
                exit_code=1,
                steps=0,
            )
            _write_report(report, args)
        sys.exit(1)
    if exit_code:
        sys.exit(exit_code)


def _report_settings(args) -> dict:
    return {
        "max_steps": args.max_steps,
        "max_tokens": args.max_tokens,
        "stream": args.stream,
        "sandbox": args.sandbox,
        "host": args.host,
    }


def _write_report(report: ReportCollector, args) -> None:
    try:
        report.write(args.report)
    except OSError as e:
        fmt.error(f"Failed to write report to {args.report}: {e}")
        return
    if args.verbose:
        fmt.info(f"Report written to {args.report}")


def _run_main(args) -> int:
    api_key = resolve_api_key(args.config_dir)
    if api_key is None:
        fmt.warning(
            "No API key configured. Set ANTHROPIC_API_KEY or create "
            f"{Path(args.config_dir) / 'anthropic_api_key'}."
        )

    host = load_host(args.host)
    settings = {key: getattr(args, key) for key in CONFIG_KEYS}
    session = Session(
        host,
        base_dir=args.base_dir,
        api_key=api_key,
        config_dir=args.config_dir,
        **config_to_session_kwargs(settings),
    )

    try:
        if not args.repl:
            return _run_single(session, args)

        if args.request:
            _handle_line(session, args.request, args.verbose)
        repl_loop(session, base_dir=args.base_dir, verbose=args.verbose)
        return 0
    finally:
        session.close()


def _run_single(session: Session, args) -> int:
    if is_undo_request(args.request):
        print(session.undo())
        return 0

    result = session.run(args.request, report=bool(args.report))
    if result.answer is not None:
        print(result.answer)
    if args.report:
        report = session.workflow.report
        _write_report(report, args)
    if result.outcome == "step_limit":
        fmt.warning("step limit reached, workflow stopped.")
    return result.exit_code


def _handle_line(session: Session, line: str, verbose: bool) -> None:
    if is_undo_request(line):
        message = session.undo()
        if not verbose:
            print(message)
        return
    try:
        result = session.run(line)
    except AgentError as e:
        fmt.error(str(e))
        return
    if result.answer is not None:
        print(result.answer)


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /undo              Revert everything the last request changed\n"
        "  /clear             Reset conversation and undo state\n"
        "  /state             Show the current host state\n"
        "  /steps [N]         Show or set the step limit\n"
        "  /exit, /quit       Exit the REPL\n"
        "Ctrl-C while a request is running cancels it."
    )


def _repl_clear(session: Session) -> None:
    """Clear conversation history and the pending undo record."""
    dropped = len(session.workflow.conversation)
    session.reset()
    fmt.info(f"context cleared ({dropped} turns removed)")


def _repl_state(session: Session) -> None:
    if session.host is None:
        fmt.warning("no host attached")
        return
    fmt.state(session.host.describe_state())
    fmt.context_stats(
        f"conversation ({len(session.workflow.conversation)} turns)",
        session.workflow.conversation.estimate_tokens(),
    )


def _repl_steps(arg: str, session: Session) -> None:
    """Show the step limit, or set it."""
    workflow = session.workflow
    arg = arg.strip()
    if not arg:
        fmt.info(f"step limit: {workflow.max_steps}")
        return
    try:
        n = int(arg)
    except ValueError:
        fmt.warning(f"invalid number: {arg}")
        return
    if n < 1:
        fmt.warning("step limit must be at least 1")
        return
    workflow.max_steps = n
    session.max_steps = n
    fmt.info(f"step limit set to {n}")


def repl_loop(session: Session, *, base_dir: str, verbose: bool) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".hostpilot", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "hostpilot> ")])

    if verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/undo":
            _handle_line(session, "undo", verbose)
            continue
        elif cmd == "/clear":
            _repl_clear(session)
            continue
        elif cmd == "/state":
            _repl_state(session)
            continue
        elif cmd == "/steps":
            _repl_steps(cmd_arg, session)
            continue

        _handle_line(session, line, verbose)


if __name__ == "__main__":
    main()
