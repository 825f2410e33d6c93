"""Snapshot and rollback of host state around agent-driven changes."""

import logging

from .host import Disposition

logger = logging.getLogger(__name__)


class UndoRecord:
    """Pre-change state of a host, restorable exactly once.

    ``snapshot`` captures every visible watched value, the set of existing
    entities and the host's undo depth. ``restore`` replays the host's own
    undo for entries created since then, writes back changed values and
    removes entities that did not exist, then invalidates the record.
    """

    def __init__(self):
        self.description = ""
        self.native_undo_count = 0
        self._valid = False
        self._values: dict = {}
        self._entity_ids: set = set()
        self._undo_depth_before = 0

    @property
    def valid(self) -> bool:
        return self._valid

    @property
    def undo_depth_before(self) -> int:
        return self._undo_depth_before

    def clear(self) -> None:
        self._valid = False
        self._values.clear()
        self._entity_ids.clear()
        self._undo_depth_before = 0
        self.native_undo_count = 0
        self.description = ""

    def snapshot(self, host) -> None:
        self.clear()
        if host is None:
            return
        self._values = {w.id: w.value for w in host.watched_values() if not w.hidden}
        self._entity_ids = set(host.entity_ids())
        self._undo_depth_before = host.undo_depth()
        self._valid = True
        logger.debug(
            "snapshot: %d values, %d entities, undo depth %d",
            len(self._values),
            len(self._entity_ids),
            self._undo_depth_before,
        )

    def after_successful_execution(self, host) -> None:
        if not self._valid or host is None:
            return
        self.native_undo_count = max(0, host.undo_depth() - self._undo_depth_before)

    def reconcile(self, host) -> None:
        """Account for native undos the operator performed on the host directly."""
        if not self._valid or host is None:
            return
        expected = self._undo_depth_before + self.native_undo_count
        current = host.undo_depth()
        if current < expected:
            already_undone = expected - current
            self.native_undo_count -= min(already_undone, self.native_undo_count)
            logger.debug(
                "reconciled: %d entries undone outside, %d pending",
                already_undone,
                self.native_undo_count,
            )

    def restore(self, host) -> bool:
        if not self._valid or host is None:
            return False
        self.reconcile(host)
        native = self.native_undo_count
        try:
            for _ in range(native):
                if host.undo_depth() > 0:
                    host.undo(1)

            for value_id, captured in self._values.items():
                current = host.value_by_id(value_id)
                if current is None:
                    continue
                if current.value != captured:
                    host.set_value(value_id, captured, Disposition.NO_GROUP)

            added = set(host.entity_ids()) - self._entity_ids
            if added:
                host.remove_entities(added)
            logger.info(
                "restored snapshot: %d native undos, %d entities removed",
                native,
                len(added),
            )
        finally:
            self.clear()
        return True

    def rollback_failure(self, host) -> bool:
        """Undo whatever a failing command managed to apply."""
        if host is None:
            self.clear()
            return False
        if host.transaction_open():
            host.abort_transaction()
        if self._valid:
            self.native_undo_count = max(
                0, host.undo_depth() - self._undo_depth_before
            )
        return self.restore(host)
