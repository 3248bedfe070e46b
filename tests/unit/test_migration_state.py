"""
Unit tests for MigrationState.

Tests cover:
- Status transitions (started, phase, completed, failed)
- Error messages recorded for failures
- Bounded, newest-first history
- Serialization and reset
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from livemigrate import (
    MigrationHistoryEntry,
    MigrationMetrics,
    MigrationPhase,
    MigrationState,
    MigrationStatus,
)


def make_metrics(migration_id: int = 1) -> MigrationMetrics:
    now = datetime.now(UTC)
    return MigrationMetrics(migration_id=migration_id, start_time=now, end_time=now, objects_migrated=2)


class TestTransitions:
    """Tests for state transitions."""

    def test_initial_state(self):
        state = MigrationState()

        assert state.status is MigrationStatus.IDLE
        assert state.current_phase is None
        assert state.current_migration_id == 0
        assert state.start_time is None
        assert state.history == []

    def test_started(self):
        state = MigrationState()
        state.started(4)

        assert state.status is MigrationStatus.IN_PROGRESS
        assert state.current_migration_id == 4
        assert state.start_time is not None

    def test_phase(self):
        state = MigrationState()
        state.started(1)
        state.phase(MigrationPhase.SECOND_PASS)

        assert state.current_phase is MigrationPhase.SECOND_PASS

    def test_completed(self):
        state = MigrationState()
        metrics = make_metrics()
        state.started(1)
        state.phase(MigrationPhase.FINALIZE)
        state.completed(metrics)

        assert state.status is MigrationStatus.SUCCESS
        assert state.current_phase is None
        assert state.last_metrics is metrics
        entry = state.history[0]
        assert entry.migration_id == 1
        assert entry.status is MigrationStatus.SUCCESS
        assert entry.metrics is metrics
        assert entry.error_message is None

    def test_failed(self):
        state = MigrationState()
        state.started(2)
        state.failed(ValueError("converter broke"), make_metrics(2))

        assert state.status is MigrationStatus.FAILED
        assert state.last_error == "converter broke"
        entry = state.history[0]
        assert entry.status is MigrationStatus.FAILED
        assert entry.error_message == "converter broke"
        assert entry.metrics.objects_migrated == 2

    def test_started_clears_last_error(self):
        state = MigrationState()
        state.started(1)
        state.failed(ValueError("x"))
        state.started(2)

        assert state.last_error is None


class TestErrorMessages:
    """Tests for the message recorded on failure."""

    def test_empty_message_uses_type_name(self):
        state = MigrationState()
        state.started(1)
        state.failed(KeyError())

        assert state.last_error == "KeyError"

    def test_no_error(self):
        state = MigrationState()
        state.started(1)
        state.failed(None)

        assert state.last_error == "Unknown error"


class TestHistory:
    """Tests for the bounded history."""

    def test_newest_first(self):
        state = MigrationState()
        for migration_id in (1, 2, 3):
            state.started(migration_id)
            state.completed(None)

        assert [e.migration_id for e in state.history] == [3, 2, 1]

    def test_bounded(self):
        state = MigrationState(max_history_size=2)
        for migration_id in (1, 2, 3):
            state.started(migration_id)
            state.failed(RuntimeError("x"))

        assert [e.migration_id for e in state.history] == [3, 2]

    def test_shrinking_trims_oldest(self):
        state = MigrationState()
        for migration_id in (1, 2, 3):
            state.started(migration_id)
            state.completed(None)
        state.set_max_history_size(1)

        assert state.max_history_size == 1
        assert [e.migration_id for e in state.history] == [3]

    @pytest.mark.parametrize("size", [0, -3])
    def test_invalid_size(self, size):
        with pytest.raises(ValueError):
            MigrationState(max_history_size=size)
        with pytest.raises(ValueError):
            MigrationState().set_max_history_size(size)

    def test_history_is_a_copy(self):
        state = MigrationState()
        state.started(1)
        state.completed(None)
        state.history.clear()

        assert len(state.history) == 1


class TestSerialization:
    """Tests for to_dict and reset."""

    def test_to_dict_in_progress(self):
        state = MigrationState()
        state.started(5)
        state.phase(MigrationPhase.FIRST_PASS)
        data = state.to_dict()

        assert data["status"] == "IN_PROGRESS"
        assert data["current_phase"] == "FIRST_PASS"
        assert data["current_migration_id"] == 5
        assert "last_migration" not in data

    def test_to_dict_with_metrics(self):
        state = MigrationState()
        state.started(1)
        state.completed(make_metrics())

        assert state.to_dict()["last_migration"]["objects_migrated"] == 2

    def test_history_entry_to_dict(self):
        entry = MigrationHistoryEntry.failure(3, "boom")
        data = entry.to_dict()

        assert data["status"] == "FAILED"
        assert data["error_message"] == "boom"
        assert data["metrics"] is None

    def test_reset(self):
        state = MigrationState()
        state.started(1)
        state.failed(RuntimeError("x"), make_metrics())
        state.reset()

        assert state.status is MigrationStatus.IDLE
        assert state.history == []
        assert state.last_metrics is None
        assert state.last_error is None
