"""
Unit tests for checkpoint controllers, CommitManager and RollbackManager.

Tests cover:
- NoopCheckpointController
- UndoJournal replay order, failure reporting and internal containers
- CommitManager listener handling and controller failures
- RollbackManager failure conversion
"""

from __future__ import annotations

import pytest

from livemigrate import (
    CheckpointController,
    CommitError,
    CommitManager,
    NoopCheckpointController,
    RollbackError,
    RollbackManager,
    UndoJournal,
)


class FailingController:
    def __init__(self, *, restore_result: bool = True, raise_on: str | None = None) -> None:
        self.restore_result = restore_result
        self.raise_on = raise_on

    def delete_checkpoint(self) -> None:
        if self.raise_on == "delete":
            raise OSError("disk full")

    def restore_from_checkpoint(self) -> bool:
        if self.raise_on == "restore":
            raise OSError("checkpoint missing")
        return self.restore_result


class TestNoopCheckpointController:
    """Tests for NoopCheckpointController."""

    def test_restore_succeeds(self):
        controller = NoopCheckpointController()

        assert controller.delete_checkpoint() is None
        assert controller.restore_from_checkpoint() is True

    def test_implements_protocol(self):
        assert isinstance(NoopCheckpointController(), CheckpointController)


class TestUndoJournal:
    """Tests for UndoJournal."""

    def test_replays_newest_first(self):
        """Overlapping writes end with the oldest value."""
        journal = UndoJournal()
        state = {"value": "c"}
        journal.record("a -> b", lambda: state.__setitem__("value", "a"))
        journal.record("b -> c", lambda: state.__setitem__("value", "b"))

        assert journal.restore_from_checkpoint() is True
        assert state["value"] == "a"

    def test_restore_empties_journal(self):
        """Replayed entries are discarded."""
        journal = UndoJournal()
        journal.record("write", lambda: None)
        journal.restore_from_checkpoint()

        assert len(journal) == 0

    def test_failed_undo_reports_failure(self):
        """A raising undo fails the restore but the rest still run."""
        journal = UndoJournal()
        ran = []

        def broken() -> None:
            raise RuntimeError("cannot undo")

        journal.record("first", lambda: ran.append("first"))
        journal.record("broken", broken)

        assert journal.restore_from_checkpoint() is False
        assert ran == ["first"]

    def test_delete_checkpoint_discards(self):
        """Deleting the checkpoint forgets every entry without running them."""
        journal = UndoJournal()
        ran = []
        journal.record("write", lambda: ran.append(1))
        journal.delete_checkpoint()

        assert len(journal) == 0
        assert journal.restore_from_checkpoint() is True
        assert ran == []

    def test_internal_containers_include_closure_cells(self):
        """The journal exposes its storage and the values its undos hold."""
        journal = UndoJournal()
        previous = ["held"]
        journal.record("write", lambda: previous.clear())
        containers = list(journal.internal_containers())

        assert containers[0] is journal
        assert any(type(c).__name__ == "cell" for c in containers)

    def test_implements_protocol(self):
        assert isinstance(UndoJournal(), CheckpointController)


class TestCommitManager:
    """Tests for CommitManager."""

    def test_commit_deletes_checkpoint(self):
        """commit discards the journal."""
        journal = UndoJournal()
        journal.record("write", lambda: None)
        CommitManager(journal).commit()

        assert len(journal) == 0

    def test_listener_called(self):
        """The listener runs after the checkpoint is deleted."""
        calls = []
        manager = CommitManager(NoopCheckpointController(), listener=lambda: calls.append("committed"))
        manager.commit()

        assert calls == ["committed"]

    def test_listener_failure_ignored(self):
        """A failing listener does not fail the commit."""

        def listener() -> None:
            raise RuntimeError("listener down")

        CommitManager(NoopCheckpointController(), listener=listener).commit()

    def test_controller_failure_raises_commit_error(self):
        """A failing delete becomes CommitError."""
        manager = CommitManager(FailingController(raise_on="delete"))

        with pytest.raises(CommitError) as exc_info:
            manager.commit()

        assert isinstance(exc_info.value.finalization_cause, OSError)
        assert "disk full" in str(exc_info.value)

    def test_controller_property(self):
        controller = NoopCheckpointController()
        assert CommitManager(controller).controller is controller


class TestRollbackManager:
    """Tests for RollbackManager."""

    def test_successful_rollback(self):
        """A successful restore returns normally."""
        RollbackManager(FailingController()).rollback()

    def test_false_restore_raises(self):
        """A falsy restore result is a rollback failure."""
        with pytest.raises(RollbackError, match="reported failure"):
            RollbackManager(FailingController(restore_result=False)).rollback()

    def test_raising_restore_raises(self):
        """A raising controller is wrapped in RollbackError."""
        with pytest.raises(RollbackError) as exc_info:
            RollbackManager(FailingController(raise_on="restore")).rollback()

        assert isinstance(exc_info.value.finalization_cause, OSError)

    def test_rollback_error_is_fatal(self):
        """Rollback failures are classified as fatal."""
        with pytest.raises(RollbackError) as exc_info:
            RollbackManager(FailingController(restore_result=False)).rollback()

        assert exc_info.value.recoverability_type.should_abort
