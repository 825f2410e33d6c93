"""Append-only markdown log of the workflows run against a host.

Every workflow adds one entry to ``<base_dir>/.hostpilot/HISTORY.md``: the
request, how it ended and after how many steps, the final explanation, and
whether its changes were rolled back or can still be undone. Once the log
reaches MAX_HISTORY_SIZE it is moved aside to HISTORY.1.md (replacing any
earlier one) and a fresh log is started.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from . import fmt

logger = logging.getLogger(__name__)

HISTORY_DIR = ".hostpilot"
HISTORY_FILE = "HISTORY.md"
ROTATED_FILE = "HISTORY.1.md"
MAX_HISTORY_SIZE = 500 * 1024
MAX_REQUEST_DISPLAY = 200


@dataclass
class HistoryEntry:
    request: str
    outcome: str
    steps: int
    answer: str | None = None
    reason: str = ""
    rolled_back: int | None = None
    undoable: bool = False

    def render(self, when: datetime) -> str:
        request = " ".join(self.request.split())
        if len(request) > MAX_REQUEST_DISPLAY:
            request = request[:MAX_REQUEST_DISPLAY] + "..."
        noun = "step" if self.steps == 1 else "steps"
        lines = [
            "---",
            "",
            f"**{when:%Y-%m-%d %H:%M:%S}** {self.outcome} after {self.steps} {noun}",
            "",
            f"> {request}",
            "",
        ]
        body = (self.answer or "").strip() or self.reason
        if body:
            lines += [body, ""]
        if self.rolled_back is not None:
            lines += [f"_rolled back, {self.rolled_back} host undo entries reverted_", ""]
        elif self.undoable:
            lines += ["_changes kept, undo available_", ""]
        return "\n".join(lines) + "\n"


def history_path(base_dir: str) -> Path:
    """Where the log lives. Raises ValueError if it resolves outside base_dir."""
    base = Path(base_dir).resolve()
    path = (base / HISTORY_DIR / HISTORY_FILE).resolve()
    if not path.is_relative_to(base):
        raise ValueError(f"history path {path} escapes base directory {base}")
    return path


def append_history(base_dir: str, entry: HistoryEntry) -> bool:
    """Append one entry. Failures only warn; returns whether it was written."""
    try:
        path = history_path(base_dir)
    except ValueError:
        fmt.warning("history path escapes base directory, skipping write")
        return False

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists() and path.stat().st_size >= MAX_HISTORY_SIZE:
            path.replace(path.with_name(ROTATED_FILE))
            logger.info("history rotated to %s", ROTATED_FILE)
        with path.open("a", encoding="utf-8") as f:
            f.write(entry.render(datetime.now()))
    except OSError as e:
        fmt.warning(f"failed to write history: {e}")
        return False
    return True
