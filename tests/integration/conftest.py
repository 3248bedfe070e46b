"""
Shared pytest fixtures for integration tests.

This module provides:
- The ``integration`` marker on every test collected under this directory
- An engine factory migrating on the real heap through GcHeapWalker
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from livemigrate import (
    CommitManager,
    GcHeapWalker,
    HeapWalkMode,
    MigrationConfig,
    MigrationEngine,
    MigrationPlan,
    RollbackManager,
    UndoJournal,
)

_INTEGRATION_DIR = Path(__file__).parent


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark every test in this directory as an integration test."""
    for item in items:
        if _INTEGRATION_DIR in item.path.parents:
            item.add_marker(pytest.mark.integration)


# ============================================================================
# Engine Fixtures
# ============================================================================


@pytest.fixture
def gc_walker() -> GcHeapWalker:
    """Heap walker over every object the garbage collector tracks."""
    return GcHeapWalker()


@pytest.fixture
def gc_engine(gc_walker: GcHeapWalker) -> Callable[..., MigrationEngine]:
    """
    Factory building engines that migrate on the real heap.

    The second pass defaults to FILTERED; pass ``mode=HeapWalkMode.FULL`` to
    walk every object.

    Usage:
        async def test_something(gc_engine):
            engine = gc_engine(MigrationPlan.build([AccountMigrator]))
            await engine.migrate(scan_targets=[Ledger])
    """

    def factory(
        plan: MigrationPlan,
        mode: HeapWalkMode = HeapWalkMode.FILTERED,
        **kwargs: Any,
    ) -> MigrationEngine:
        journal = UndoJournal()
        kwargs.setdefault("recorder", journal)
        kwargs.setdefault("commit_manager", CommitManager(journal))
        kwargs.setdefault("rollback_manager", RollbackManager(journal))
        kwargs.setdefault("config", MigrationConfig(heap_walk_mode=mode))
        kwargs.setdefault("enable_tracing", False)
        kwargs.setdefault("enable_metrics", False)
        return MigrationEngine(plan, heap_walker=gc_walker, **kwargs)

    return factory
