"""Host application boundary.

A host is anything that exposes the small surface the workflow needs:
transactions, a registry of watched values, a set of addressable
entities, a linear undo stack and two descriptive strings that are fed to
the model. ``InMemoryHost`` is a compact mixer-like host used by the CLI
demo and the test-suite.
"""

import enum
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class HostError(Exception):
    """Raised by a host for operations it cannot perform."""


class Disposition(enum.Enum):
    """How a value change propagates to grouped siblings."""

    GROUP = "group"
    NO_GROUP = "no_group"


@dataclass(frozen=True)
class WatchedValue:
    id: str
    value: Any
    hidden: bool = False


@runtime_checkable
class Host(Protocol):
    def begin_transaction(self, name: str) -> None: ...

    def commit_transaction(self) -> None: ...

    def abort_transaction(self) -> None: ...

    def transaction_open(self) -> bool: ...

    def watched_values(self) -> Iterable[WatchedValue]: ...

    def value_by_id(self, value_id: str) -> WatchedValue | None: ...

    def set_value(self, value_id: str, value: Any, disposition: Disposition) -> None: ...

    def entity_ids(self) -> set: ...

    def remove_entities(self, ids: Iterable) -> None: ...

    def undo_depth(self) -> int: ...

    def undo(self, n: int = 1) -> None: ...

    def describe_state(self) -> str: ...

    def capability_catalog(self) -> str: ...

    def command_namespace(self) -> dict: ...


# --- In-memory reference host ---

CONTROLS = ("gain", "mute", "pan")
MIN_TEMPO = 20.0
MAX_TEMPO = 300.0

CATALOG = """\
Available operations (the host object is bound as `session`):
  session.add_track(name) -> Track        create a new track
  session.track(name) -> Track            look up a track by name
  session.tracks() -> list[Track]         all tracks in order
  session.rename_track(track, new_name)   rename (undoable)
  session.set_tempo(bpm)                  change tempo, 20-300 (undoable)
  session.create_group(name, [tracks])    route group, shares control changes
  track.gain = 0.0..2.0                   linear gain
  track.mute = True/False
  track.pan = -1.0..1.0
Helpers: begin_command(name) / commit_command() wrap undoable edits."""


class Track:
    """Script-facing handle on one track; control writes go through the host."""

    def __init__(self, host: "InMemoryHost", track_id: str):
        self._host = host
        self.id = track_id

    def __repr__(self):
        return f"Track({self.name!r})"

    @property
    def name(self) -> str:
        return self._host._track(self.id)["name"]

    def _get(self, control: str):
        return self._host._values[f"{self.id}/{control}"]

    def _set(self, control: str, value) -> None:
        self._host.set_value(f"{self.id}/{control}", value, Disposition.GROUP)

    gain = property(lambda self: self._get("gain"), lambda self, v: self._set("gain", v))
    mute = property(lambda self: self._get("mute"), lambda self, v: self._set("mute", v))
    pan = property(lambda self: self._get("pan"), lambda self, v: self._set("pan", v))


def _check_control(control: str, value):
    if control == "mute":
        if not isinstance(value, bool):
            raise HostError(f"mute must be True or False, got {value!r}")
        return value
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise HostError(f"{control} must be a number, got {value!r}")
    low, high = (0.0, 2.0) if control == "gain" else (-1.0, 1.0)
    if not low <= value <= high:
        raise HostError(f"{control} out of range [{low}, {high}]: {value}")
    return float(value)


class InMemoryHost:
    """Tracks with gain/mute/pan controls, route groups, tempo and undo."""

    def __init__(self, tempo: float = 120.0):
        self.tempo = float(tempo)
        self._ids = itertools.count(1)
        self._tracks: dict[str, dict] = {}
        self._values: dict[str, Any] = {"master/monitor": 1.0}
        self._hidden = {"master/monitor"}
        self._groups: dict[str, set[str]] = {}
        self._undo_stack: list[tuple[str, list[Callable[[], None]]]] = []
        self._pending: tuple[str, list[Callable[[], None]]] | None = None
        self._history_callbacks: list[Callable[[], None]] = []

    # --- Transactions and undo ---

    def begin_transaction(self, name: str) -> None:
        if self._pending is not None:
            raise HostError(
                f"cannot begin '{name}': transaction '{self._pending[0]}' is still open"
            )
        self._pending = (name, [])

    def commit_transaction(self) -> None:
        if self._pending is None:
            raise HostError("no transaction to commit")
        name, reverts = self._pending
        self._pending = None
        if reverts:
            self._undo_stack.append((name, reverts))
            self._history_changed()

    def abort_transaction(self) -> None:
        # Changes made inside the transaction stay applied; only the undo
        # entry is discarded.
        if self._pending is not None:
            logger.debug("aborting transaction %r", self._pending[0])
        self._pending = None

    def transaction_open(self) -> bool:
        return self._pending is not None

    def undo_depth(self) -> int:
        return len(self._undo_stack)

    def undo(self, n: int = 1) -> None:
        for _ in range(n):
            if not self._undo_stack:
                break
            name, reverts = self._undo_stack.pop()
            logger.debug("undo %r", name)
            for revert in reversed(reverts):
                revert()
        self._history_changed()

    def subscribe_history(self, callback: Callable[[], None]) -> None:
        self._history_callbacks.append(callback)

    def _history_changed(self) -> None:
        for callback in list(self._history_callbacks):
            callback()

    def _record(self, name: str, revert: Callable[[], None]) -> None:
        if self._pending is not None:
            self._pending[1].append(revert)
        else:
            self._undo_stack.append((name, [revert]))
            self._history_changed()

    # --- Watched values ---

    def watched_values(self) -> list[WatchedValue]:
        return [
            WatchedValue(vid, value, vid in self._hidden)
            for vid, value in self._values.items()
        ]

    def value_by_id(self, value_id: str) -> WatchedValue | None:
        if value_id not in self._values:
            return None
        return WatchedValue(value_id, self._values[value_id], value_id in self._hidden)

    def set_value(self, value_id: str, value, disposition: Disposition) -> None:
        if value_id not in self._values:
            raise HostError(f"unknown value: {value_id}")
        owner, _, control = value_id.partition("/")
        if owner in self._tracks:
            value = _check_control(control, value)
        targets = [owner]
        if disposition is Disposition.GROUP:
            for members in self._groups.values():
                if owner in members:
                    targets = sorted(members, key=self._order)
                    break
        for target in targets:
            self._values[f"{target}/{control}"] = value

    # --- Entities ---

    def entity_ids(self) -> set:
        return set(self._tracks)

    def remove_entities(self, ids: Iterable) -> None:
        for track_id in list(ids):
            if track_id not in self._tracks:
                raise HostError(f"unknown track id: {track_id}")
            del self._tracks[track_id]
            for control in CONTROLS:
                del self._values[f"{track_id}/{control}"]
            for members in self._groups.values():
                members.discard(track_id)

    # --- Script-facing operations ---

    def _order(self, track_id: str) -> int:
        return self._tracks[track_id]["order"]

    def _track(self, track_id: str) -> dict:
        try:
            return self._tracks[track_id]
        except KeyError:
            raise HostError(f"track {track_id} no longer exists") from None

    def _resolve(self, track) -> str:
        if isinstance(track, Track):
            self._track(track.id)
            return track.id
        for track_id, info in self._tracks.items():
            if info["name"] == track:
                return track_id
        raise HostError(f"no track named {track!r}")

    def add_track(self, name: str) -> Track:
        if not name or not isinstance(name, str):
            raise HostError("track name must be a non-empty string")
        if any(info["name"] == name for info in self._tracks.values()):
            raise HostError(f"a track named {name!r} already exists")
        track_id = f"t{next(self._ids)}"
        self._tracks[track_id] = {"name": name, "order": len(self._tracks)}
        self._values[f"{track_id}/gain"] = 1.0
        self._values[f"{track_id}/mute"] = False
        self._values[f"{track_id}/pan"] = 0.0
        return Track(self, track_id)

    def track(self, name: str) -> Track:
        return Track(self, self._resolve(name))

    def tracks(self) -> list[Track]:
        return [Track(self, tid) for tid in sorted(self._tracks, key=self._order)]

    def rename_track(self, track, new_name: str) -> None:
        track_id = self._resolve(track)
        if not new_name or not isinstance(new_name, str):
            raise HostError("track name must be a non-empty string")
        info = self._tracks[track_id]
        old_name = info["name"]
        if old_name == new_name:
            return
        if any(t["name"] == new_name for t in self._tracks.values()):
            raise HostError(f"a track named {new_name!r} already exists")
        info["name"] = new_name

        def revert():
            if track_id in self._tracks:
                self._tracks[track_id]["name"] = old_name

        self._record(f"rename {old_name} to {new_name}", revert)

    def set_tempo(self, bpm) -> None:
        if not isinstance(bpm, (int, float)) or not MIN_TEMPO <= bpm <= MAX_TEMPO:
            raise HostError(f"tempo must be between {MIN_TEMPO:g} and {MAX_TEMPO:g}")
        old = self.tempo
        self.tempo = float(bpm)

        def revert():
            self.tempo = old

        self._record(f"tempo {old:g} -> {bpm:g}", revert)

    def create_group(self, name: str, tracks: Iterable = ()) -> None:
        if name in self._groups:
            raise HostError(f"group {name!r} already exists")
        self._groups[name] = {self._resolve(t) for t in tracks}

    # --- Descriptions ---

    def describe_state(self) -> str:
        lines = [f"Tempo: {self.tempo:g} BPM", f"Tracks ({len(self._tracks)}):"]
        for track_id in sorted(self._tracks, key=self._order):
            info = self._tracks[track_id]
            gain = self._values[f"{track_id}/gain"]
            mute = self._values[f"{track_id}/mute"]
            pan = self._values[f"{track_id}/pan"]
            lines.append(
                f"  - {info['name']}: gain={gain:g} mute={mute} pan={pan:g}"
            )
        for name, members in sorted(self._groups.items()):
            names = ", ".join(self._tracks[m]["name"] for m in sorted(members, key=self._order))
            lines.append(f"Group {name}: {names}")
        return "\n".join(lines)

    def capability_catalog(self) -> str:
        return CATALOG

    def command_namespace(self) -> dict:
        return {"Disposition": Disposition, "HostError": HostError}
