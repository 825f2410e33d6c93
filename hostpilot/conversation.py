"""Turn history, token budgeting and request assembly."""

import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

USER = "user"
ASSISTANT = "assistant"

CHARS_PER_TOKEN = 4
MAX_INPUT_TOKENS = 100_000
PRUNE_TARGET_TOKENS = 80_000
MIN_KEEP_PAIRS = 2

ContextSource = Callable[[], tuple[str, str]]


@dataclass(frozen=True)
class Turn:
    role: str
    content: str


def estimate_tokens(text: str) -> int:
    """Character-based estimate, rounded up."""
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def _no_context() -> tuple[str, str]:
    return "", ""


class Conversation:
    """Ordered turns exchanged with the provider.

    ``context`` returns the (state snapshot, capability catalog) pair that
    gets injected into the outgoing request. It is called fresh each time
    it is needed and its text is never stored in the history.
    """

    def __init__(
        self,
        system_prompt: str = "",
        context: ContextSource | None = None,
        *,
        max_input_tokens: int = MAX_INPUT_TOKENS,
        target_tokens: int = PRUNE_TARGET_TOKENS,
        min_keep_pairs: int = MIN_KEEP_PAIRS,
    ):
        self.system_prompt = system_prompt
        self.context = context or _no_context
        self.max_input_tokens = max_input_tokens
        self.target_tokens = target_tokens
        self.min_keep_pairs = min_keep_pairs
        self.turns: list[Turn] = []

    def __len__(self) -> int:
        return len(self.turns)

    def append(self, turn: Turn) -> None:
        self.turns.append(turn)

    def add_user(self, content: str) -> None:
        self.append(Turn(USER, content))

    def add_assistant(self, content: str) -> None:
        self.append(Turn(ASSISTANT, content))

    def clear(self) -> None:
        self.turns.clear()

    def estimate_tokens(self, context: tuple[str, str] | None = None) -> int:
        """Estimate of the full request, injected context included."""
        snapshot, catalog = context if context is not None else self.context()
        total = estimate_tokens(self.system_prompt)
        for turn in self.turns:
            total += estimate_tokens(turn.role) + estimate_tokens(turn.content)
        total += estimate_tokens(snapshot) + estimate_tokens(catalog)
        return total

    def prune(self) -> int:
        """Drop the oldest turns once the history is over budget.

        Nothing happens while the estimate is within max_input_tokens.
        Beyond that, turns go from the front until the estimate reaches
        target_tokens or only min_keep_pairs pairs remain; the history
        then starts at the next user turn. Returns how many turns went.
        """
        context = self.context()
        if self.estimate_tokens(context) <= self.max_input_tokens:
            return 0

        before = len(self.turns)
        min_keep = self.min_keep_pairs * 2
        while (
            len(self.turns) > min_keep
            and self.estimate_tokens(context) > self.target_tokens
        ):
            self.turns.pop(0)

        while self.turns and self.turns[0].role != USER:
            self.turns.pop(0)

        dropped = before - len(self.turns)
        if dropped:
            logger.info("pruned %d turns, %d remain", dropped, len(self.turns))
        return dropped

    def build_request_turns(self) -> list[Turn]:
        """Copy of the history with fresh context prepended to the last user turn."""
        turns = list(self.turns)
        for i in range(len(turns) - 1, -1, -1):
            if turns[i].role != USER:
                continue
            snapshot, catalog = self.context()
            enriched = (
                "Current host state:\n"
                + snapshot
                + "\n\n"
                + catalog
                + "\nUser request: "
                + turns[i].content
            )
            turns[i] = Turn(USER, enriched)
            break
        return turns
