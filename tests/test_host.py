"""Tests for the in-memory reference host."""

import pytest

from hostpilot.host import Disposition, Host, HostError, InMemoryHost


def _host_with_tracks(*names):
    host = InMemoryHost()
    for name in names:
        host.add_track(name)
    return host


class TestProtocol:
    def test_in_memory_host_satisfies_protocol(self):
        assert isinstance(InMemoryHost(), Host)


class TestTracks:
    def test_add_and_lookup(self):
        host = _host_with_tracks("Drums", "Bass")
        assert [t.name for t in host.tracks()] == ["Drums", "Bass"]
        assert host.track("Bass").gain == 1.0
        assert len(host.entity_ids()) == 2

    def test_duplicate_name_rejected(self):
        host = _host_with_tracks("Drums")
        with pytest.raises(HostError, match="already exists"):
            host.add_track("Drums")

    def test_unknown_track(self):
        with pytest.raises(HostError, match="no track named"):
            InMemoryHost().track("Nope")

    def test_control_validation(self):
        track = _host_with_tracks("Drums").track("Drums")
        with pytest.raises(HostError):
            track.gain = 5.0
        with pytest.raises(HostError):
            track.mute = "yes"
        with pytest.raises(HostError):
            track.pan = -2

    def test_controls_are_watched_values(self):
        host = _host_with_tracks("Drums")
        track = host.track("Drums")
        track.pan = -0.5
        ids = {w.id: w for w in host.watched_values()}
        assert ids[f"{track.id}/pan"].value == -0.5
        assert ids["master/monitor"].hidden
        assert host.value_by_id("missing") is None

    def test_remove_entities(self):
        host = _host_with_tracks("Drums", "Bass")
        bass = host.track("Bass")
        host.remove_entities({bass.id})
        assert [t.name for t in host.tracks()] == ["Drums"]
        assert host.value_by_id(f"{bass.id}/gain") is None

    def test_stale_handle(self):
        host = _host_with_tracks("Drums")
        track = host.track("Drums")
        host.remove_entities({track.id})
        with pytest.raises(HostError, match="no longer exists"):
            track.name


class TestGroups:
    def test_group_disposition_propagates(self):
        host = _host_with_tracks("Kick", "Snare", "Bass")
        host.create_group("drums", ["Kick", "Snare"])
        host.track("Kick").gain = 0.5
        assert host.track("Snare").gain == 0.5
        assert host.track("Bass").gain == 1.0

    def test_no_group_disposition_is_local(self):
        host = _host_with_tracks("Kick", "Snare")
        host.create_group("drums", ["Kick", "Snare"])
        kick = host.track("Kick")
        host.set_value(f"{kick.id}/gain", 0.25, Disposition.NO_GROUP)
        assert kick.gain == 0.25
        assert host.track("Snare").gain == 1.0


class TestUndo:
    def test_rename_creates_undo_entry(self):
        host = _host_with_tracks("Drums")
        host.rename_track("Drums", "Kit")
        assert host.undo_depth() == 1
        host.undo(1)
        assert host.track("Drums")
        assert host.undo_depth() == 0

    def test_tempo_is_undoable(self):
        host = InMemoryHost(tempo=100)
        host.set_tempo(128)
        host.set_tempo(140)
        host.undo(2)
        assert host.tempo == 100

    def test_control_changes_are_not_on_undo_stack(self):
        host = _host_with_tracks("Drums")
        host.track("Drums").gain = 0.3
        assert host.undo_depth() == 0

    def test_transaction_groups_entries(self):
        host = _host_with_tracks("A", "B")
        host.begin_transaction("renames")
        host.rename_track("A", "A2")
        host.rename_track("B", "B2")
        assert host.undo_depth() == 0
        host.commit_transaction()
        assert host.undo_depth() == 1
        host.undo(1)
        assert [t.name for t in host.tracks()] == ["A", "B"]

    def test_double_begin_faults(self):
        host = InMemoryHost()
        host.begin_transaction("one")
        with pytest.raises(HostError, match="still open"):
            host.begin_transaction("two")

    def test_abort_keeps_changes_but_drops_entry(self):
        host = InMemoryHost(tempo=120)
        host.begin_transaction("t")
        host.set_tempo(90)
        host.abort_transaction()
        assert host.tempo == 90
        assert host.undo_depth() == 0
        assert not host.transaction_open()

    def test_commit_without_begin(self):
        with pytest.raises(HostError):
            InMemoryHost().commit_transaction()

    def test_history_callbacks(self):
        host = InMemoryHost()
        calls = []
        host.subscribe_history(lambda: calls.append(host.undo_depth()))
        host.set_tempo(100)
        host.undo(1)
        assert calls == [1, 0]


class TestDescriptions:
    def test_describe_state(self):
        host = _host_with_tracks("Drums")
        host.create_group("g", ["Drums"])
        text = host.describe_state()
        assert "Tempo: 120 BPM" in text
        assert "Drums: gain=1 mute=False pan=0" in text
        assert "Group g: Drums" in text

    def test_catalog_mentions_operations(self):
        catalog = InMemoryHost().capability_catalog()
        assert "add_track" in catalog
        assert "begin_command" in catalog
