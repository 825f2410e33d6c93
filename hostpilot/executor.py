"""Response parsing and guarded execution of generated commands."""

import builtins
import logging
from typing import Callable

from .host import HostError
from .report import ConfigError

logger = logging.getLogger(__name__)

COMPLETION_MARKER = "[DONE]"
FENCE = "```"
TAGGED_OPENER = "```python"
BARE_OPENER = "```\n"

_SAFE_BUILTINS = (
    "abs all any bool callable chr dict divmod enumerate filter float format "
    "frozenset getattr hasattr hash int isinstance issubclass iter len list map "
    "max min next ord pow range repr reversed round set slice sorted str sum "
    "tuple zip True False None "
    "ArithmeticError AttributeError Exception IndexError KeyError LookupError "
    "RuntimeError StopIteration TypeError ValueError ZeroDivisionError "
    "__build_class__"
).split()


def extract_command(text: str) -> str:
    """Collect the code inside fenced blocks.

    ```python blocks are preferred; bare ``` blocks are only collected
    until the first tagged one is found. Text on the opener line after the
    fence is skipped. An unclosed block runs to the end of the text, and
    multiple blocks are joined with a blank line. Blocks holding only
    whitespace are skipped.
    """
    blocks: list[str] = []
    tagged = False
    pos = 0
    while pos < len(text):
        start = text.find(TAGGED_OPENER, pos)
        if start >= 0:
            tagged = True
            body = start + len(TAGGED_OPENER)
            nl = text.find("\n", body)
            body = len(text) if nl < 0 else nl + 1
        elif not tagged:
            start = text.find(BARE_OPENER, pos)
            if start < 0:
                break
            body = start + len(BARE_OPENER)
        else:
            break

        end = text.find(FENCE, body)
        if end < 0:
            end = len(text)
        block = text[body:end].rstrip(" \r\n")
        if block.strip():
            blocks.append(block)
        pos = end + len(FENCE)
    return "\n\n".join(blocks)


def extract_explanation(text: str) -> str:
    """Everything outside fenced blocks, with surrounding blank lines trimmed.

    Text after an unclosed block, or after a fence with nothing following
    on its line, is not part of the explanation.
    """
    parts: list[str] = []
    pos = 0
    while pos < len(text):
        start = text.find(FENCE, pos)
        if start < 0:
            parts.append(text[pos:])
            break
        parts.append(text[pos:start])
        nl = text.find("\n", start)
        if nl < 0:
            break
        end = text.find(FENCE, nl + 1)
        if end < 0:
            break
        pos = end + len(FENCE)
    return "".join(parts).lstrip("\r\n").rstrip(" \r\n")


def has_completion_marker(text: str) -> bool:
    return COMPLETION_MARKER in text


def strip_completion_marker(text: str) -> str:
    """Remove every marker occurrence and the trailing whitespace it leaves."""
    return text.replace(COMPLETION_MARKER, "").rstrip(" \r\n")


class _LineWriter:
    """print() replacement that hands complete lines to a callback."""

    def __init__(self, on_line: Callable[[str], None] | None):
        self._on_line = on_line
        self._partial = ""

    def print(self, *args, sep=" ", end="\n", file=None, flush=False):
        self.write(sep.join(str(a) for a in args) + end)

    def write(self, text: str) -> None:
        text = self._partial + text
        *complete, self._partial = text.split("\n")
        for line in complete:
            self._emit(line)

    def flush(self) -> None:
        if self._partial:
            line, self._partial = self._partial, ""
            self._emit(line)

    def _emit(self, line: str) -> None:
        if self._on_line is not None:
            self._on_line(line)


class Executor:
    """Runs one command in a fresh namespace bound to the host.

    With ``sandbox`` set, scripts only see a restricted set of builtins:
    no imports, file access, eval/exec/compile or input().
    """

    def __init__(self, *, sandbox: bool = True):
        self.sandbox = sandbox

    def _namespace(self, host, writer: _LineWriter) -> dict:
        def begin_command(name: str = "hostpilot command") -> None:
            if host.transaction_open():
                logger.debug("begin_command: aborting open transaction")
                host.abort_transaction()
            host.begin_transaction(name)

        def commit_command() -> None:
            host.commit_transaction()

        if self.sandbox:
            safe = {name: getattr(builtins, name) for name in _SAFE_BUILTINS}
        else:
            safe = dict(vars(builtins))
        safe["print"] = writer.print

        namespace = {"__builtins__": safe, "__name__": "__hostpilot__"}
        namespace.update(host.command_namespace())
        namespace.update(
            session=host,
            print=writer.print,
            begin_command=begin_command,
            commit_command=commit_command,
        )
        return namespace

    def execute(
        self,
        host,
        command: str,
        on_output: Callable[[str], None] | None = None,
    ) -> tuple[bool, str]:
        """Run ``command`` against ``host``.

        Returns (True, "") on success or (False, message) when the command
        faulted. Raises ConfigError when there is nothing to run.
        """
        if host is None:
            raise ConfigError("No host attached")
        if not command or not command.strip():
            raise ConfigError("No command to execute")

        if host.transaction_open():
            logger.debug("aborting transaction left open by a previous run")
            host.abort_transaction()

        writer = _LineWriter(on_output)
        namespace = self._namespace(host, writer)
        logger.debug("executing command (%d chars, sandbox=%s)", len(command), self.sandbox)

        try:
            code = compile(command, "<command>", "exec")
            exec(code, namespace)
        except SyntaxError as e:
            writer.flush()
            where = f" (line {e.lineno})" if e.lineno else ""
            return False, f"Syntax error: {e.msg}{where}"
        except HostError as e:
            writer.flush()
            return False, f"Host error: {e}"
        except SystemExit:
            writer.flush()
            return False, "Error: command called exit()"
        except Exception as e:
            writer.flush()
            return False, f"Error: {type(e).__name__}: {e}"

        writer.flush()
        if host.transaction_open():
            logger.debug("command left a transaction open, aborting it")
            host.abort_transaction()
        return True, ""
