"""
Migration phases and the host application's critical-phase signal.

The engine tells the host when it is about to rewrite references
(``before_critical_phase``) and when it is done (``after_critical_phase``),
so the host can pause request handling, background jobs or anything else
that would observe half-patched state. Both callbacks may be plain
functions or coroutines.

Example:
    >>> class PauseWorkers:
    ...     async def before_critical_phase(self, ctx: MigrationContext) -> None:
    ...         await workers.pause()
    ...
    ...     async def after_critical_phase(self, ctx: MigrationContext) -> None:
    ...         await workers.resume()
"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from livemigrate.plan import MigrationPlan


class MigrationPhase(Enum):
    """
    Phases of one migration attempt, in execution order.
    """

    FIRST_PASS = "FIRST_PASS"
    """Snapshot source instances and convert each one."""

    CRITICAL_PHASE = "CRITICAL_PHASE"
    """Host is quiesced; references are being rewritten."""

    SECOND_PASS = "SECOND_PASS"
    """Walk live objects and patch references to converted instances."""

    REGISTRY_UPDATE = "REGISTRY_UPDATE"
    """Retarget declared registries and capability-typed containers."""

    SMOKE_TEST = "SMOKE_TEST"
    """Run health checks and smoke tests on the result."""

    FINALIZE = "FINALIZE"
    """Commit, or roll back."""

    @property
    def span_name(self) -> str:
        return f"livemigrate.engine.{self.value.lower()}"


@dataclass(frozen=True)
class MigrationContext:
    """
    Identity of one migration attempt, handed to phase signals.

    Attributes:
        plan: The plan being executed.
        migration_id: Monotonic attempt identifier.
        started_at: When the attempt started (UTC).
    """

    plan: MigrationPlan
    migration_id: int
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "started_at": self.started_at.isoformat(),
            "migrators": len(self.plan),
        }


@runtime_checkable
class PhaseSignal(Protocol):
    """
    Host callbacks around the critical phase.

    Raising from ``before_critical_phase`` aborts the migration before any
    reference is rewritten. Raising from ``after_critical_phase`` rolls the
    migration back.
    """

    def before_critical_phase(self, ctx: MigrationContext) -> Awaitable[None] | None: ...

    def after_critical_phase(self, ctx: MigrationContext) -> Awaitable[None] | None: ...


class NoopPhaseSignal:
    """Phase signal for hosts that need no quiescence."""

    def before_critical_phase(self, ctx: MigrationContext) -> None:
        return None

    def after_critical_phase(self, ctx: MigrationContext) -> None:
        return None


__all__ = [
    "MigrationPhase",
    "MigrationContext",
    "PhaseSignal",
    "NoopPhaseSignal",
]
