"""
Rollback Example

This example shows what happens when a migration does not pan out:
- A smoke test rejects the converted objects
- The engine rolls every rewritten reference back
- The raised error carries the smoke test report and the rollback outcome
- Configuration is loaded from YAML with environment overrides

Run with: python examples/rollback_example.py
"""

import asyncio
import os
import tempfile
from pathlib import Path

from livemigrate import (
    ClassMigrator,
    CommitManager,
    GcHeapWalker,
    MigrationEngine,
    MigrationPlan,
    RollbackManager,
    SmokeTestFailedError,
    SmokeTestRunner,
    UndoJournal,
    load_config,
)

CONFIG_YAML = """\
migration:
  heap:
    walk:
      mode: FILTERED
  timeout:
    smoke:
      test: 5
    migration: 30
  alert:
    level: DEBUG
"""


class Price:
    pass


class PriceV1(Price):
    def __init__(self, amount: float) -> None:
        self.amount = amount


class PriceV2(Price):
    def __init__(self, cents: int) -> None:
        self.cents = cents


class TruncatingMigrator(ClassMigrator[PriceV1, PriceV2]):
    """Drops the fractional part, which the smoke test catches."""

    def migrate(self, old: PriceV1) -> PriceV2:
        return PriceV2(int(old.amount) * 100)


class Catalog:
    def __init__(self, *prices: Price) -> None:
        self.prices = list(prices)


def cents_preserved(created) -> bool:
    return all(price.cents % 100 != 0 for objects in created.values() for price in objects)


async def main() -> None:
    print("=" * 60)
    print("Rollback Example")
    print("=" * 60)

    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "migration.yml"
        path.write_text(CONFIG_YAML, encoding="utf-8")
        os.environ.setdefault("LIVEMIGRATE_TIMEOUT_HEAP_WALK", "2")
        config = load_config(path)

    print("\n1. Loaded configuration")
    for key, value in config.to_dict().items():
        print(f"   {key}: {value}")

    catalog = Catalog(PriceV1(9.99), PriceV1(4.50))
    journal = UndoJournal()
    engine = MigrationEngine(
        MigrationPlan.build([TruncatingMigrator]),
        heap_walker=GcHeapWalker(),
        smoke_runner=SmokeTestRunner(smoke_tests=[cents_preserved]),
        commit_manager=CommitManager(journal),
        rollback_manager=RollbackManager(journal),
        recorder=journal,
        config=config,
    )

    print("\n2. Migrating with a lossy migrator")
    try:
        await engine.migrate(scan_targets=[Catalog])
    except SmokeTestFailedError as e:
        print(f"   migration failed: {e.message}")
        print(f"   rollback attempted: {e.rollback_attempted}")
        print(f"   rollback succeeded: {e.rollback_succeeded}")
        for failure in e.report.failures:
            print(f"   failed check: {failure.name} ({failure.message})")

    print("\n3. Catalog after rollback")
    print(f"   price types: {[type(p).__name__ for p in catalog.prices]}")
    print(f"   engine status: {engine.state.status.value}")

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
