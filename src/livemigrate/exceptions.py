"""
Exceptions raised by the live migration engine.

Every error carries an error classification so callers (and alert sinks)
can decide whether a failed migration is worth retrying or needs an operator.

Exception Hierarchy:
    MigrationError (base)
    +-- PlanError
    +-- ConversionError
    +-- MigrationTimeoutError
    +-- PhaseSignalError
    +-- SmokeTestFailedError
    +-- FinalizationError
    |   +-- CommitError
    |   +-- RollbackError
    +-- HeapWalkError
    +-- HeapSizeError
    +-- MigrationInProgressError
    +-- ConfigurationError

Error Classification:
    - ErrorSeverity: CRITICAL, ERROR, WARNING, INFO levels
    - ErrorRecoverability: RECOVERABLE, TRANSIENT, FATAL categories
    - ErrorClassification: metadata attached to each error type

Example:
    >>> try:
    ...     await engine.migrate()
    ... except MigrationError as e:
    ...     if e.rollback_attempted and not e.rollback_succeeded:
    ...         page_operator(e.to_dict())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from livemigrate.smoke import SmokeTestReport

logger = logging.getLogger(__name__)

_SUBJECT_REPR_LIMIT = 200


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Used for alerting, logging, and operator notification decisions.
    """

    CRITICAL = "critical"
    """Process state may be inconsistent; needs immediate attention."""

    ERROR = "error"
    """The migration failed and was rolled back."""

    WARNING = "warning"
    """Issue that should be monitored but did not fail a migration."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def should_alert(self) -> bool:
        """
        Check if this severity level should trigger an alert.

        Returns:
            True for CRITICAL and ERROR levels.
        """
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: The migration can be retried after fixing its inputs
            (a converter bug, a failing smoke test).
        TRANSIENT: Temporary condition that may pass on retry
            (a timeout, a busy host application).
        FATAL: Finalization failed; process state needs operator review.
    """

    RECOVERABLE = "recoverable"
    """Error can be recovered from with operator action."""

    TRANSIENT = "transient"
    """Temporary error that may resolve on retry."""

    FATAL = "fatal"
    """Unrecoverable error requiring operator intervention."""

    @property
    def should_retry(self) -> bool:
        """
        Check if automatic retry is appropriate for this category.

        Returns:
            True only for TRANSIENT errors.
        """
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        """
        Check if the process should stop attempting migrations.

        Returns:
            True only for FATAL errors.
        """
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing an error type.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        """
        Convert classification to dictionary for serialization.

        Returns:
            Dictionary representation of the classification.
        """
        return {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }


def describe_object(obj: Any) -> str:
    """
    Describe an object for diagnostics without letting its __repr__ fail.

    Returns:
        ``module.Class@0xid [repr]`` with the repr truncated, or just the
        type and identity when repr raises.
    """
    cls = type(obj)
    head = f"{cls.__module__}.{cls.__qualname__}@{id(obj):#x}"
    try:
        text = repr(obj)
    except Exception:  # noqa: BLE001 - repr of arbitrary user objects
        return head
    if len(text) > _SUBJECT_REPR_LIMIT:
        text = text[: _SUBJECT_REPR_LIMIT - 3] + "..."
    return f"{head} [{text}]"


def _type_name(cls: type | None) -> str | None:
    if cls is None:
        return None
    return f"{cls.__module__}.{cls.__qualname__}"


class MigrationError(Exception):
    """
    Base exception for all migration errors.

    Attributes:
        message: Human-readable error description.
        migration_id: The migration attempt that raised the error, if known.
        stage: Phase or step in which the error happened.
        source_type: Fully qualified name of the class being migrated from.
        target_type: Fully qualified name of the class being migrated to.
        subject: Safe description of the object involved.
        recoverable: Whether the caller can retry after fixing inputs.
        suggested_action: Overrides the classification's suggested action.
        rollback_attempted: Set by the engine when rollback was tried.
        rollback_succeeded: Set by the engine with the rollback outcome.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review migration logs; process state was rolled back",
    )

    def __init__(
        self,
        message: str,
        *,
        migration_id: int | None = None,
        stage: str | None = None,
        source_type: type | None = None,
        target_type: type | None = None,
        subject: Any = None,
        recoverable: bool = False,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.migration_id = migration_id
        self.stage = stage
        self.source_type = _type_name(source_type)
        self.target_type = _type_name(target_type)
        self.subject = describe_object(subject) if subject is not None else None
        self.recoverable = recoverable
        self.suggested_action = suggested_action
        self.rollback_attempted = False
        self.rollback_succeeded = False
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with diagnostic context."""
        parts = [self.message]
        if self.stage:
            parts.append(f"[stage={self.stage}]")
        if self.source_type:
            parts.append(f"[from={self.source_type}]")
        if self.target_type:
            parts.append(f"[to={self.target_type}]")
        if self.subject:
            parts.append(f"[object={self.subject}]")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """
        Get the error classification for this exception.

        Subclasses override _default_classification to provide
        specific classification metadata for their error type.
        """
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        """Get the severity level of this error."""
        return self.classification.severity

    @property
    def recoverability_type(self) -> ErrorRecoverability:
        """Get the recoverability classification of this error."""
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        """Get the unique error code for this exception (e.g. "MIGRATION_TIMEOUT")."""
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "migration_id": self.migration_id,
            "stage": self.stage,
            "source_type": self.source_type,
            "target_type": self.target_type,
            "subject": self.subject,
            "rollback_attempted": self.rollback_attempted,
            "rollback_succeeded": self.rollback_succeeded,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class PlanError(MigrationError):
    """
    Raised when a set of migrator descriptors cannot form a valid plan.

    Duplicate source or target classes, a capability type that is not a base
    of both sides, and migration cycles are all rejected at build time.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_PLAN_INVALID",
        category="plan",
        suggested_action="Fix the migrator declarations; nothing was migrated",
    )


class ConversionError(MigrationError):
    """
    Raised when a converter fails for one instance.

    A single failed conversion aborts the whole migration.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_CONVERSION_FAILED",
        category="conversion",
        suggested_action="Fix the converter for the reported class and retry",
    )


class MigrationTimeoutError(MigrationError):
    """
    Raised when a bounded operation exceeds its timeout.

    Attributes:
        operation: Name of the operation that timed out.
        timeout: The configured bound in seconds.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="MIGRATION_TIMEOUT",
        category="timeout",
        suggested_action="Retry when the process is less busy or raise the timeout",
    )

    def __init__(
        self,
        operation: str,
        timeout: float,
        *,
        migration_id: int | None = None,
    ) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            f"Operation '{operation}' timed out after {round(timeout * 1000)} ms",
            migration_id=migration_id,
            stage=operation,
            recoverable=True,
        )

    @property
    def timeout_ms(self) -> int:
        """The configured bound in milliseconds."""
        return round(self.timeout * 1000)


class PhaseSignalError(MigrationError):
    """Raised when the host application's critical-phase callback fails."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="MIGRATION_PHASE_SIGNAL_FAILED",
        category="signal",
        suggested_action="Check the application's pause/resume hooks and retry",
    )


class SmokeTestFailedError(MigrationError):
    """
    Raised when post-migration health checks or smoke tests fail.

    Attributes:
        report: The failing SmokeTestReport.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_VALIDATION_FAILED",
        category="validation",
        suggested_action="Inspect the failing checks; the migration was rolled back",
    )

    def __init__(
        self,
        report: SmokeTestReport,
        *,
        migration_id: int | None = None,
    ) -> None:
        self.report = report
        failed = [r.name for r in report.failures]
        super().__init__(
            f"Smoke tests failed: {', '.join(failed)}",
            migration_id=migration_id,
            stage="SMOKE_TEST",
            recoverable=True,
        )


class FinalizationError(MigrationError):
    """
    Raised when commit or rollback itself fails.

    This is the one unrecoverable outcome: process state may be partially
    migrated. The message names both the original cause (if any) and the
    finalization failure.

    Attributes:
        cause: The error that triggered finalization, if any.
        finalization_cause: The error raised by commit or rollback.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_FINALIZATION_FAILED",
        category="finalization",
        suggested_action="Process state may be inconsistent; restart or restore manually",
    )

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException | None = None,
        finalization_cause: BaseException | None = None,
        migration_id: int | None = None,
        stage: str | None = None,
    ) -> None:
        self.cause = cause
        self.finalization_cause = finalization_cause
        parts = [message]
        if cause is not None:
            parts.append(f"original cause: {cause}")
        if finalization_cause is not None:
            parts.append(f"finalization failure: {finalization_cause}")
        super().__init__("; ".join(parts), migration_id=migration_id, stage=stage)


class CommitError(FinalizationError):
    """Raised when deleting the checkpoint fails."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_COMMIT_FAILED",
        category="finalization",
        suggested_action="The checkpoint could not be deleted; check the controller",
    )


class RollbackError(FinalizationError):
    """Raised when restoring the checkpoint fails or reports failure."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ROLLBACK_FAILED",
        category="finalization",
        suggested_action="Rollback failed; the process may hold migrated objects",
    )


class HeapWalkError(MigrationError):
    """Raised when the heap walker cannot snapshot, walk or advance its epoch."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="MIGRATION_HEAP_WALK_FAILED",
        category="heap",
        suggested_action="Check the heap walker and retry",
    )


class HeapSizeError(MigrationError):
    """
    Raised when process memory is outside the configured bounds.

    Attributes:
        current_mb: Measured memory in megabytes.
        limit_mb: The bound that was violated.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_HEAP_SIZE",
        category="configuration",
        suggested_action="Adjust migration.heap.size.min/max or the process memory",
    )

    def __init__(self, message: str, *, current_mb: float, limit_mb: float) -> None:
        self.current_mb = current_mb
        self.limit_mb = limit_mb
        super().__init__(message, recoverable=True)


class MigrationInProgressError(MigrationError):
    """Raised when a migration is requested while another one is running."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="MIGRATION_IN_PROGRESS",
        category="state",
        suggested_action="Wait for the running migration to finish",
    )


class ConfigurationError(MigrationError):
    """Raised when components or configuration cannot be assembled."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_CONFIGURATION",
        category="configuration",
        suggested_action="Fix the component registrations or configuration file",
    )


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classify any exception and return its error classification.

    For MigrationError subclasses, returns their specific classification.
    For other exceptions, returns a generic classification.

    Args:
        exc: The exception to classify.

    Returns:
        ErrorClassification for the exception.
    """
    if isinstance(exc, MigrationError):
        return exc.classification

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs.",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "describe_object",
    "MigrationError",
    "PlanError",
    "ConversionError",
    "MigrationTimeoutError",
    "PhaseSignalError",
    "SmokeTestFailedError",
    "FinalizationError",
    "CommitError",
    "RollbackError",
    "HeapWalkError",
    "HeapSizeError",
    "MigrationInProgressError",
    "ConfigurationError",
    "classify_exception",
]
