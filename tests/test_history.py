"""Tests for the version store cursor semantics."""

import pytest

from sitebot.history import VersionStore


def _store_with(count: int) -> VersionStore:
    store = VersionStore()
    for idx in range(count):
        store.commit(f"<html>v{idx}</html>", instruction=f"step {idx}")
    return store


class TestCommit:
    def test_empty_store_has_no_artifact(self):
        store = VersionStore()

        assert len(store) == 0
        assert store.cursor == -1
        assert store.current() is None
        assert store.current_version() is None

    def test_cursor_tracks_last_index_after_every_commit(self):
        store = VersionStore()
        for idx in range(6):
            store.commit(f"v{idx}")
            assert store.cursor == len(store) - 1

    def test_commit_accepts_empty_content(self):
        store = VersionStore()

        version = store.commit("")

        assert version.index == 0
        assert store.current() == ""

    def test_commit_after_browsing_back_discards_forward_versions(self):
        store = _store_with(5)
        store.select_cursor(2)

        version = store.commit("x")

        assert len(store) == 4
        assert store.cursor == 3
        assert version.index == 3
        assert [v.content for v in store.versions] == [
            "<html>v0</html>",
            "<html>v1</html>",
            "<html>v2</html>",
            "x",
        ]

    def test_commit_from_no_artifact_cursor_drops_everything(self):
        store = _store_with(3)
        store.select_cursor(-1)

        store.commit("fresh")

        assert len(store) == 1
        assert store.current() == "fresh"


class TestSelectCursor:
    @pytest.mark.parametrize("index", [-1, 0, 1, 2, 3])
    def test_select_changes_only_cursor(self, index):
        store = _store_with(4)
        before = store.versions

        store.select_cursor(index)

        assert store.cursor == index
        assert store.versions == before

    @pytest.mark.parametrize("index", [-2, 4, 100])
    def test_out_of_range_is_rejected_without_side_effects(self, index):
        store = _store_with(4)
        store.select_cursor(1)

        with pytest.raises(IndexError):
            store.select_cursor(index)

        assert store.cursor == 1
        assert len(store) == 4

    def test_current_follows_cursor(self):
        store = _store_with(3)

        store.select_cursor(0)

        assert store.current() == "<html>v0</html>"


class TestUndoRedo:
    def test_undo_and_redo_move_without_truncating(self):
        store = _store_with(3)

        assert store.undo() is True
        assert store.undo() is True
        assert store.undo() is False
        assert store.cursor == 0

        assert store.redo() is True
        assert store.cursor == 1
        assert len(store) == 3

    def test_redo_at_latest_is_noop(self):
        store = _store_with(2)

        assert store.redo() is False
        assert store.cursor == 1


class TestRestore:
    def test_restore_reindexes_and_points_at_last(self):
        source = _store_with(3)

        restored = VersionStore.restore(source.versions)

        assert len(restored) == 3
        assert restored.cursor == 2
        assert [v.index for v in restored.versions] == [0, 1, 2]

    def test_restore_empty(self):
        restored = VersionStore.restore([])

        assert restored.cursor == -1

    def test_attach_record_id_keeps_content(self):
        store = _store_with(2)

        store.attach_record_id(1, 42)

        assert store.current_version().record_id == 42
        assert store.current() == "<html>v1</html>"


class TestCommitOnParent:
    def test_parent_overrides_moved_cursor(self):
        store = _store_with(3)
        store.undo()

        store.commit("<html>v2-refined</html>", parent=2)

        assert [v.content for v in store.versions] == [
            "<html>v0</html>",
            "<html>v1</html>",
            "<html>v2</html>",
            "<html>v2-refined</html>",
        ]
        assert store.cursor == 3

    def test_parent_out_of_range_is_rejected(self):
        store = _store_with(2)

        with pytest.raises(IndexError):
            store.commit("x", parent=5)
        assert len(store) == 2
