"""Heap enumeration: snapshots, the walker protocol and its implementations."""

from livemigrate.heap.snapshot import HeapSnapshot, HeapSnapshotEntry
from livemigrate.heap.walker import (
    GcHeapWalker,
    HeapWalker,
    MigrationAwareWalker,
    TrackedHeapWalker,
)

__all__ = [
    "HeapSnapshot",
    "HeapSnapshotEntry",
    "HeapWalker",
    "MigrationAwareWalker",
    "GcHeapWalker",
    "TrackedHeapWalker",
]
