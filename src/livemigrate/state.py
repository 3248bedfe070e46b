"""
Migration state tracking.

MigrationState records what one engine is doing right now and a bounded,
newest-first history of finished attempts. It is safe to read from other
threads (a status endpoint, a health check) while a migration runs.

Example:
    >>> state = MigrationState()
    >>> state.started(1)
    >>> state.status
    <MigrationStatus.IN_PROGRESS: 'IN_PROGRESS'>
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from livemigrate.metrics import MigrationMetrics
    from livemigrate.phase import MigrationPhase

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 10


class MigrationStatus(Enum):
    """
    Status of the most recent migration attempt.
    """

    IDLE = "IDLE"
    """No migration has run yet, or the state was reset."""

    IN_PROGRESS = "IN_PROGRESS"
    """A migration attempt is running."""

    SUCCESS = "SUCCESS"
    """The last attempt committed."""

    FAILED = "FAILED"
    """The last attempt failed and was rolled back (or tried to be)."""


@dataclass(frozen=True)
class MigrationHistoryEntry:
    """
    One finished migration attempt.

    Attributes:
        migration_id: Attempt identifier.
        timestamp: When the attempt finished (UTC).
        status: SUCCESS or FAILED.
        metrics: Metrics of the attempt; partial for failures.
        error_message: Why the attempt failed, None on success.
    """

    migration_id: int
    status: MigrationStatus
    metrics: MigrationMetrics | None = None
    error_message: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def success(cls, migration_id: int, metrics: MigrationMetrics | None) -> MigrationHistoryEntry:
        return cls(migration_id=migration_id, status=MigrationStatus.SUCCESS, metrics=metrics)

    @classmethod
    def failure(
        cls,
        migration_id: int,
        error_message: str,
        partial_metrics: MigrationMetrics | None = None,
    ) -> MigrationHistoryEntry:
        return cls(
            migration_id=migration_id,
            status=MigrationStatus.FAILED,
            metrics=partial_metrics,
            error_message=error_message,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
            "error_message": self.error_message,
            "metrics": self.metrics.to_dict() if self.metrics is not None else None,
        }


class MigrationState:
    """
    Status, current phase and history of one engine's migrations.

    All mutation happens under a reentrant lock; readers get consistent
    copies.

    Args:
        max_history_size: How many finished attempts to keep (must be positive)
    """

    def __init__(self, max_history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        if max_history_size <= 0:
            raise ValueError(f"max_history_size must be positive: {max_history_size}")
        self._lock = threading.RLock()
        self._max_history_size = max_history_size
        self._status = MigrationStatus.IDLE
        self._current_phase: MigrationPhase | None = None
        self._current_migration_id = 0
        self._start_time: datetime | None = None
        self._last_metrics: MigrationMetrics | None = None
        self._last_error: str | None = None
        self._history: list[MigrationHistoryEntry] = []

    # =========================================================================
    # Transitions
    # =========================================================================

    def started(self, migration_id: int) -> None:
        """Mark a new attempt as in progress."""
        with self._lock:
            self._status = MigrationStatus.IN_PROGRESS
            self._current_migration_id = migration_id
            self._start_time = datetime.now(UTC)
            self._current_phase = None
            self._last_error = None

    def phase(self, phase: MigrationPhase | None) -> None:
        """Record the phase the current attempt entered."""
        with self._lock:
            self._current_phase = phase

    def completed(self, metrics: MigrationMetrics | None) -> None:
        """Mark the current attempt as committed."""
        with self._lock:
            self._status = MigrationStatus.SUCCESS
            self._last_metrics = metrics
            self._current_phase = None
            self._last_error = None
            self._add_to_history(MigrationHistoryEntry.success(self._current_migration_id, metrics))

    def failed(self, error: BaseException | None, partial_metrics: MigrationMetrics | None = None) -> None:
        """Mark the current attempt as failed."""
        message = (str(error) or type(error).__name__) if error is not None else "Unknown error"
        with self._lock:
            self._status = MigrationStatus.FAILED
            self._last_error = message
            self._last_metrics = partial_metrics
            self._current_phase = None
            self._add_to_history(
                MigrationHistoryEntry.failure(self._current_migration_id, message, partial_metrics)
            )

    def _add_to_history(self, entry: MigrationHistoryEntry) -> None:
        self._history.insert(0, entry)
        del self._history[self._max_history_size :]

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def max_history_size(self) -> int:
        return self._max_history_size

    def set_max_history_size(self, size: int) -> None:
        """
        Change how many finished attempts are kept, trimming the oldest.

        Raises:
            ValueError: If size is not positive
        """
        if size <= 0:
            raise ValueError(f"max_history_size must be positive: {size}")
        with self._lock:
            self._max_history_size = size
            del self._history[size:]

    @property
    def status(self) -> MigrationStatus:
        return self._status

    @property
    def current_phase(self) -> MigrationPhase | None:
        return self._current_phase

    @property
    def current_migration_id(self) -> int:
        return self._current_migration_id

    @property
    def start_time(self) -> datetime | None:
        return self._start_time

    @property
    def last_metrics(self) -> MigrationMetrics | None:
        return self._last_metrics

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def history(self) -> list[MigrationHistoryEntry]:
        """Finished attempts, newest first."""
        with self._lock:
            return list(self._history)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            data: dict[str, Any] = {
                "status": self._status.value,
                "current_phase": self._current_phase.value if self._current_phase is not None else None,
                "current_migration_id": self._current_migration_id,
                "start_time": self._start_time.isoformat() if self._start_time is not None else None,
                "last_error": self._last_error,
            }
            if self._last_metrics is not None:
                data["last_migration"] = self._last_metrics.to_dict()
            return data

    def reset(self) -> None:
        """Forget everything, including history."""
        with self._lock:
            self._status = MigrationStatus.IDLE
            self._current_phase = None
            self._current_migration_id = 0
            self._start_time = None
            self._last_metrics = None
            self._last_error = None
            self._history.clear()
        logger.debug("Migration state reset")


__all__ = [
    "DEFAULT_HISTORY_SIZE",
    "MigrationStatus",
    "MigrationHistoryEntry",
    "MigrationState",
]
