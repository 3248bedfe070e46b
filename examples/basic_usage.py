"""
Basic Usage Example

This example demonstrates a live migration inside a running process:
- Defining old and new versions of a class behind a shared capability
- Writing a migrator that converts one instance into its replacement
- Declaring a registry the engine keeps up to date
- Running the engine and observing lifecycle events

Run with: python examples/basic_usage.py
"""

import asyncio
import logging
from typing import Annotated, ClassVar

from livemigrate import (
    ClassMigrator,
    CommitManager,
    GcHeapWalker,
    MigrationConfig,
    MigrationContext,
    MigrationEngine,
    MigrationLifecycleEvent,
    MigrationPlan,
    RollbackManager,
    SmokeTestResult,
    SmokeTestRunner,
    UndoJournal,
    UpdateRegistry,
)

# =============================================================================
# Step 1: Define the Capability and Both Versions
# =============================================================================
# Holders refer to the capability, so they accept either version.


class Greeter:
    """Capability shared by every greeter version."""

    def greet(self) -> str:
        raise NotImplementedError


class GreeterV1(Greeter):
    def __init__(self, name: str) -> None:
        self.name = name

    def greet(self) -> str:
        return f"Hello, {self.name}"


class GreeterV2(Greeter):
    def __init__(self, first: str, punctuation: str = "!") -> None:
        self.first = first
        self.punctuation = punctuation

    def greet(self) -> str:
        return f"Hello, {self.first}{self.punctuation}"


# =============================================================================
# Step 2: Write the Migrator
# =============================================================================
# migrate() builds the replacement; validate() rejects a bad conversion
# before any reference is rewritten.


class GreeterMigrator(ClassMigrator[GreeterV1, GreeterV2]):
    def migrate(self, old: GreeterV1) -> GreeterV2:
        return GreeterV2(first=old.name.split(" ")[0])

    def validate(self, migrated: GreeterV2) -> None:
        if not migrated.first:
            raise ValueError("greeter lost its name")


# =============================================================================
# Step 3: Application State Holding Greeters
# =============================================================================


class Frontdesk:
    """Application service holding greeters in several places."""

    by_language: ClassVar[Annotated[dict[str, Greeter], UpdateRegistry()]] = {}

    def __init__(self, *greeters: Greeter) -> None:
        self.greeters = list(greeters)
        self.default = greeters[0]


class PauseRequests:
    """Phase signal standing in for pausing request handling."""

    async def before_critical_phase(self, ctx: MigrationContext) -> None:
        print(f"   [signal] pausing requests for migration {ctx.migration_id}")

    async def after_critical_phase(self, ctx: MigrationContext) -> None:
        print(f"   [signal] resuming requests after migration {ctx.migration_id}")


def greeters_answer(created) -> SmokeTestResult:
    """Smoke test: every new greeter still produces a greeting."""
    for objects in created.values():
        for greeter in objects:
            if not greeter.greet().startswith("Hello, "):
                return SmokeTestResult.fail(f"bad greeting from {greeter!r}", name="greetings")
    return SmokeTestResult.passed("greetings")


# =============================================================================
# Step 4: Run the Migration
# =============================================================================


async def main() -> None:
    logging.basicConfig(level=logging.WARNING)

    print("=" * 60)
    print("Live Migration Example")
    print("=" * 60)

    ada = GreeterV1("Ada Lovelace")
    grace = GreeterV1("Grace Hopper")
    desk = Frontdesk(ada, grace)
    Frontdesk.by_language["en"] = ada

    print("\n1. Before migration")
    print(f"   default greeter: {type(desk.default).__name__} -> {desk.default.greet()}")

    journal = UndoJournal()
    engine = MigrationEngine(
        MigrationPlan.build([GreeterMigrator]),
        heap_walker=GcHeapWalker(),
        phase_signal=PauseRequests(),
        smoke_runner=SmokeTestRunner(smoke_tests=[greeters_answer]),
        commit_manager=CommitManager(journal),
        rollback_manager=RollbackManager(journal),
        recorder=journal,
        config=MigrationConfig(),
    )

    def on_event(event: MigrationLifecycleEvent) -> None:
        print(f"   [event] {event.event_type}")

    engine.alert_logger.subscribe(on_event)

    print("\n2. Migrating")
    result = await engine.migrate(scan_targets=[Frontdesk])

    print("\n3. After migration")
    print(f"   status: {result.status.value}")
    print(f"   objects migrated: {result.objects_migrated}")
    print(f"   objects patched: {result.objects_patched}")
    print(f"   default greeter: {type(desk.default).__name__} -> {desk.default.greet()}")
    print(f"   registry entry: {type(Frontdesk.by_language['en']).__name__}")
    print(f"   all greeters: {[g.greet() for g in desk.greeters]}")

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
