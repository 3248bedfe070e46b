"""Test that all modules can be imported without circular import errors."""

import importlib

import pytest

MODULES = [
    "livemigrate",
    "livemigrate.alerts",
    "livemigrate.checkpoint",
    "livemigrate.components",
    "livemigrate.config",
    "livemigrate.engine",
    "livemigrate.exceptions",
    "livemigrate.forwarding",
    "livemigrate.heap",
    "livemigrate.heap.snapshot",
    "livemigrate.heap.walker",
    "livemigrate.metrics",
    "livemigrate.observability",
    "livemigrate.observability.attributes",
    "livemigrate.observability.tracer",
    "livemigrate.patching",
    "livemigrate.patching.mutations",
    "livemigrate.patching.patcher",
    "livemigrate.phase",
    "livemigrate.plan",
    "livemigrate.registry",
    "livemigrate.registry.introspection",
    "livemigrate.registry.markers",
    "livemigrate.registry.updater",
    "livemigrate.smoke",
    "livemigrate.state",
    "livemigrate.timeouts",
]

PACKAGES = [
    "livemigrate",
    "livemigrate.heap",
    "livemigrate.observability",
    "livemigrate.patching",
    "livemigrate.registry",
]


@pytest.mark.parametrize("name", MODULES)
def test_module_imports(name):
    """Every module imports cleanly on its own."""
    assert importlib.import_module(name) is not None


@pytest.mark.parametrize("name", PACKAGES)
def test_exports_resolve(name):
    """Every name listed in __all__ is defined."""
    package = importlib.import_module(name)
    missing = [export for export in package.__all__ if not hasattr(package, export)]

    assert missing == []


def test_top_level_matches_subpackages():
    """Top-level re-exports resolve to the same objects."""
    import livemigrate
    from livemigrate.engine import MigrationEngine
    from livemigrate.heap import GcHeapWalker
    from livemigrate.patching import ReferenceGraphPatcher

    assert livemigrate.MigrationEngine is MigrationEngine
    assert livemigrate.GcHeapWalker is GcHeapWalker
    assert livemigrate.ReferenceGraphPatcher is ReferenceGraphPatcher


def test_version_available():
    import livemigrate

    assert isinstance(livemigrate.__version__, str)
