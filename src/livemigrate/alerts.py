"""
Structured alerts for migration lifecycle events.

MigrationAlertLogger writes one key=value line per lifecycle event to the
``livemigrate.alerts`` logger, in a format log aggregators can parse:

    MIGRATION_STARTED id=42
    PHASE_STARTED id=42 phase=FIRST_PASS
    PHASE_COMPLETED id=42 phase=FIRST_PASS duration_ms=400
    MIGRATION_COMPLETED id=42 duration_ms=1000 objects_migrated=500 objects_patched=37 memory_delta=1024

Which lines are written depends on the AlertLevel. Failures, timeouts and
failed rollbacks are always written.

Every event is also published, as an immutable pydantic model, to the
listeners subscribed with ``subscribe``, whatever the alert level.

Example:
    >>> alerts = MigrationAlertLogger(AlertLevel.DEBUG)
    >>> received = []
    >>> alerts.subscribe(received.append)
    >>> alerts.migration_started(1)
    >>> received[0].migration_id
    1
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from livemigrate.metrics import MigrationMetrics
    from livemigrate.phase import MigrationPhase

logger = logging.getLogger(__name__)

ALERT_LOGGER_NAME = "livemigrate.alerts"


class AlertLevel(Enum):
    """
    Minimum severity of lifecycle events written by MigrationAlertLogger.
    """

    DEBUG = "DEBUG"
    """Everything: start, phase transitions, completion, warnings and errors."""

    WARNING = "WARNING"
    """Warnings (rollback triggered) and errors. The default."""

    ERROR = "ERROR"
    """Errors only (migration failed, rollback failed, timeouts)."""


# =============================================================================
# Lifecycle events
# =============================================================================


class MigrationLifecycleEvent(BaseModel):
    """
    Base class for migration lifecycle events.

    Attributes:
        event_id: Unique identifier of this event
        occurred_at: When the event happened (UTC)
        migration_id: Attempt the event belongs to
    """

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4, description="Unique event identifier")
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the event occurred (UTC)",
    )
    migration_id: int = Field(..., description="Migration attempt identifier")

    @property
    def event_type(self) -> str:
        return type(self).__name__


class MigrationStarted(MigrationLifecycleEvent):
    """A migration attempt started."""


class PhaseStarted(MigrationLifecycleEvent):
    """A phase of an attempt started."""

    phase: str


class PhaseCompleted(MigrationLifecycleEvent):
    """A phase of an attempt completed."""

    phase: str
    duration_ms: float = Field(ge=0)


class MigrationCompleted(MigrationLifecycleEvent):
    """A migration attempt committed."""

    duration_ms: float = Field(ge=0)
    objects_migrated: int = Field(ge=0)
    objects_patched: int = Field(ge=0)
    memory_delta: int


class MigrationFailed(MigrationLifecycleEvent):
    """A migration attempt failed."""

    phase: str
    error: str
    duration_ms: float | None = None
    objects_migrated: int | None = None


class RollbackTriggered(MigrationLifecycleEvent):
    """Rollback of an attempt started."""

    reason: str


class RollbackCompleted(MigrationLifecycleEvent):
    """Rollback of an attempt finished."""

    status: Literal["SUCCESS", "FAILED"]

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCESS"


class MigrationTimedOut(MigrationLifecycleEvent):
    """A migration attempt exceeded its time bound."""

    timeout_ms: int = Field(ge=0)
    phase: str


AlertListener = Callable[[MigrationLifecycleEvent], None]


# =============================================================================
# Alert logger
# =============================================================================


class MigrationAlertLogger:
    """
    Writes and publishes migration lifecycle events.

    Args:
        level: Minimum level of lines written (default WARNING)
        logger_name: Name of the logger lines are written to
    """

    def __init__(
        self,
        level: AlertLevel = AlertLevel.WARNING,
        *,
        logger_name: str = ALERT_LOGGER_NAME,
    ) -> None:
        self._level = level
        self._log = logging.getLogger(logger_name)
        self._listeners: list[AlertListener] = []
        self._lock = threading.Lock()

    @property
    def level(self) -> AlertLevel:
        return self._level

    @level.setter
    def level(self, level: AlertLevel | None) -> None:
        self._level = level if level is not None else AlertLevel.WARNING

    def subscribe(self, listener: AlertListener) -> None:
        """Receive every lifecycle event, whatever the alert level."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: AlertListener) -> bool:
        """Stop delivering events to ``listener``. Returns True if it was subscribed."""
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return False
            return True

    def _publish(self, event: MigrationLifecycleEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(
                    "Alert listener %r failed on %s: %s",
                    listener,
                    event.event_type,
                    e,
                    exc_info=True,
                )

    def _info_enabled(self) -> bool:
        return self._level is AlertLevel.DEBUG

    def _warn_enabled(self) -> bool:
        return self._level in (AlertLevel.DEBUG, AlertLevel.WARNING)

    # =========================================================================
    # Events
    # =========================================================================

    def migration_started(self, migration_id: int) -> None:
        if self._info_enabled():
            self._log.info("MIGRATION_STARTED id=%d", migration_id)
        self._publish(MigrationStarted(migration_id=migration_id))

    def phase_started(self, migration_id: int, phase: MigrationPhase) -> None:
        if self._info_enabled():
            self._log.info("PHASE_STARTED id=%d phase=%s", migration_id, phase.value)
        self._publish(PhaseStarted(migration_id=migration_id, phase=phase.value))

    def phase_completed(self, migration_id: int, phase: MigrationPhase, duration_ms: float) -> None:
        if self._info_enabled():
            self._log.info(
                "PHASE_COMPLETED id=%d phase=%s duration_ms=%d",
                migration_id,
                phase.value,
                round(duration_ms),
            )
        self._publish(PhaseCompleted(migration_id=migration_id, phase=phase.value, duration_ms=duration_ms))

    def migration_completed(self, migration_id: int, metrics: MigrationMetrics) -> None:
        if self._info_enabled():
            self._log.info(
                "MIGRATION_COMPLETED id=%d duration_ms=%d objects_migrated=%d objects_patched=%d memory_delta=%d",
                migration_id,
                round(metrics.total_duration_ms),
                metrics.objects_migrated,
                metrics.objects_patched,
                metrics.memory_delta,
            )
        self._publish(
            MigrationCompleted(
                migration_id=migration_id,
                duration_ms=metrics.total_duration_ms,
                objects_migrated=metrics.objects_migrated,
                objects_patched=metrics.objects_patched,
                memory_delta=metrics.memory_delta,
            )
        )

    def migration_failed(
        self,
        migration_id: int,
        error: BaseException | None,
        phase: MigrationPhase | None = None,
        partial_metrics: MigrationMetrics | None = None,
    ) -> None:
        message = str(error) if error is not None else "Unknown error"
        phase_name = phase.value if phase is not None else "UNKNOWN"
        if partial_metrics is not None:
            self._log.error(
                'MIGRATION_FAILED id=%d phase=%s error="%s" duration_ms=%d objects_migrated=%d',
                migration_id,
                phase_name,
                message,
                round(partial_metrics.total_duration_ms),
                partial_metrics.objects_migrated,
            )
        else:
            self._log.error('MIGRATION_FAILED id=%d phase=%s error="%s"', migration_id, phase_name, message)
        self._publish(
            MigrationFailed(
                migration_id=migration_id,
                phase=phase_name,
                error=message,
                duration_ms=partial_metrics.total_duration_ms if partial_metrics is not None else None,
                objects_migrated=partial_metrics.objects_migrated if partial_metrics is not None else None,
            )
        )

    def rollback_triggered(self, migration_id: int, reason: str) -> None:
        if self._warn_enabled():
            self._log.warning('ROLLBACK_TRIGGERED id=%d reason="%s"', migration_id, reason)
        self._publish(RollbackTriggered(migration_id=migration_id, reason=reason))

    def rollback_completed(self, migration_id: int, success: bool) -> None:
        if success:
            if self._warn_enabled():
                self._log.warning("ROLLBACK_COMPLETED id=%d status=SUCCESS", migration_id)
        else:
            self._log.error("ROLLBACK_COMPLETED id=%d status=FAILED", migration_id)
        self._publish(RollbackCompleted(migration_id=migration_id, status="SUCCESS" if success else "FAILED"))

    def migration_timeout(
        self,
        migration_id: int,
        timeout_ms: int,
        phase: MigrationPhase | None = None,
        *,
        recovered: bool = False,
    ) -> None:
        """Report a timed-out step; ``recovered`` steps had a fallback and log as warnings."""
        phase_name = phase.value if phase is not None else "UNKNOWN"
        if not recovered:
            self._log.error("MIGRATION_TIMEOUT id=%d timeout_ms=%d phase=%s", migration_id, timeout_ms, phase_name)
        elif self._warn_enabled():
            self._log.warning("MIGRATION_TIMEOUT id=%d timeout_ms=%d phase=%s", migration_id, timeout_ms, phase_name)
        self._publish(MigrationTimedOut(migration_id=migration_id, timeout_ms=timeout_ms, phase=phase_name))


__all__ = [
    "ALERT_LOGGER_NAME",
    "AlertLevel",
    "AlertListener",
    "MigrationAlertLogger",
    "MigrationLifecycleEvent",
    "MigrationStarted",
    "PhaseStarted",
    "PhaseCompleted",
    "MigrationCompleted",
    "MigrationFailed",
    "RollbackTriggered",
    "RollbackCompleted",
    "MigrationTimedOut",
]
