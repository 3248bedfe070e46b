"""
Heap walkers: enumerating live objects for the migration engine.

The engine only talks to the HeapWalker protocol. Two implementations ship
with the package:

- GcHeapWalker enumerates everything the cyclic garbage collector tracks
  (``gc.get_objects()``). No cooperation from the host is needed.
- TrackedHeapWalker only knows the objects the host registered with
  ``track()``. Use it when a full heap scan is too expensive or when only a
  known set of objects should ever be migrated.

Tags handed out by ``snapshot`` are valid until ``advance_epoch``; resolving
a tag from an older epoch, or one whose object was collected, returns None.

Example:
    >>> walker = GcHeapWalker()
    >>> snapshot = walker.snapshot(OldUser)
    >>> users = [walker.resolve(entry.tag) for entry in snapshot]
"""

from __future__ import annotations

import gc
import itertools
import logging
import threading
import weakref
from collections.abc import Iterable, Iterator
from typing import Any, Protocol, runtime_checkable

from livemigrate.heap.snapshot import HeapSnapshot, HeapSnapshotEntry

logger = logging.getLogger(__name__)


@runtime_checkable
class HeapWalker(Protocol):
    """
    Enumerates live objects and hands out epoch-scoped tags for them.
    """

    def snapshot(self, source_type: type) -> HeapSnapshot:
        """Report every live instance of exactly ``source_type``."""
        ...

    def resolve(self, tag: int) -> Any | None:
        """Return the object behind a tag, or None when it is gone or stale."""
        ...

    def walk_all(self) -> list[Any]:
        """Return every live object the walker can see."""
        ...

    def walk_filtered(self, types: Iterable[type]) -> list[Any]:
        """Return the live objects whose class is one of ``types``."""
        ...

    def advance_epoch(self) -> None:
        """Invalidate every tag issued so far."""
        ...


@runtime_checkable
class MigrationAwareWalker(Protocol):
    """Walkers that need to hear about completed migrations."""

    def migrated(self, pairs: Iterable[tuple[Any, Any]]) -> None:
        """Called with the (old, new) pairs of a committed migration."""
        ...


def _qualified_name(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


class _EpochTags:
    """Epoch-scoped tag table shared by the walker implementations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._epoch = 0
        self._counter = itertools.count(1)
        # tag -> (weakref or None, strong object or None)
        self._tags: dict[int, tuple[weakref.ref[Any] | None, Any]] = {}

    @property
    def epoch(self) -> int:
        return self._epoch

    def issue(self, obj: Any) -> int:
        with self._lock:
            tag = next(self._counter)
            try:
                self._tags[tag] = (weakref.ref(obj), None)
            except TypeError:
                self._tags[tag] = (None, obj)
            return tag

    def resolve(self, tag: int) -> Any | None:
        with self._lock:
            entry = self._tags.get(tag)
        if entry is None:
            return None
        ref, strong = entry
        return ref() if ref is not None else strong

    def advance(self) -> None:
        with self._lock:
            self._epoch += 1
            self._tags.clear()
        logger.debug("Heap walker epoch advanced to %d", self._epoch)

    def internal_containers(self) -> Iterator[Any]:
        yield self
        yield self._tags
        yield from self._tags.values()

    def __len__(self) -> int:
        return len(self._tags)


class GcHeapWalker:
    """
    Heap walker backed by the garbage collector's object list.

    Only objects tracked by the cyclic collector are visible: instances of
    user classes and containers. Atomic values (ints, strings) never are.

    The namespaces of classes are never returned by ``walk_all``: they must
    be changed through ``setattr`` on the class so the type attribute cache
    stays coherent, which ``ReferenceGraphPatcher.patch_static_fields`` does.

    Args:
        collect_before_snapshot: Run ``gc.collect()`` before each snapshot so
            unreachable instances are not migrated
    """

    def __init__(self, *, collect_before_snapshot: bool = True) -> None:
        self._tags = _EpochTags()
        self._collect = collect_before_snapshot

    @property
    def epoch(self) -> int:
        return self._tags.epoch

    def snapshot(self, source_type: type) -> HeapSnapshot:
        if self._collect:
            gc.collect()
        name = _qualified_name(source_type)
        entries = [
            HeapSnapshotEntry(tag=self._tags.issue(obj), class_name=name)
            for obj in gc.get_objects()
            if type(obj) is source_type
        ]
        logger.debug("Snapshot of %s found %d instances", name, len(entries))
        return HeapSnapshot(tuple(entries))

    def resolve(self, tag: int) -> Any | None:
        return self._tags.resolve(tag)

    def walk_all(self) -> list[Any]:
        objects = gc.get_objects()
        excluded = {id(o) for o in self.internal_containers()}
        excluded.add(id(objects))
        for obj in objects:
            if isinstance(obj, type):
                for referent in gc.get_referents(obj):
                    if type(referent) is dict:
                        excluded.add(id(referent))
        return [o for o in objects if id(o) not in excluded]

    def walk_filtered(self, types: Iterable[type]) -> list[Any]:
        wanted = set(types)
        excluded = {id(o) for o in self.internal_containers()}
        return [o for o in gc.get_objects() if type(o) in wanted and id(o) not in excluded]

    def advance_epoch(self) -> None:
        self._tags.advance()

    def internal_containers(self) -> Iterator[Any]:
        """Yield the walker's own bookkeeping objects."""
        yield self
        yield from self._tags.internal_containers()


class TrackedHeapWalker:
    """
    Heap walker over an explicit set of objects registered by the host.

    Objects are held weakly where possible. After a committed migration the
    new objects replace the old ones in the tracked set.

    Example:
        >>> walker = TrackedHeapWalker()
        >>> for user in load_users():
        ...     walker.track(user)
    """

    def __init__(self, objects: Iterable[Any] = ()) -> None:
        self._tags = _EpochTags()
        self._lock = threading.Lock()
        # id -> (weakref or None, strong object or None)
        self._tracked: dict[int, tuple[weakref.ref[Any] | None, Any]] = {}
        for obj in objects:
            self.track(obj)

    def track(self, obj: Any) -> None:
        """Start reporting ``obj`` from this walker."""
        key = id(obj)
        tracked = self._tracked

        def _forget(ref: weakref.ref[Any]) -> None:
            entry = tracked.get(key)
            if entry is not None and entry[0] is ref:
                tracked.pop(key, None)

        with self._lock:
            try:
                self._tracked[key] = (weakref.ref(obj, _forget), None)
            except TypeError:
                self._tracked[key] = (None, obj)

    def untrack(self, obj: Any) -> bool:
        """Stop reporting ``obj``. Returns True if it was tracked."""
        with self._lock:
            entry = self._tracked.get(id(obj))
            if entry is None or self._deref(entry) is not obj:
                return False
            del self._tracked[id(obj)]
            return True

    @staticmethod
    def _deref(entry: tuple[weakref.ref[Any] | None, Any]) -> Any:
        ref, strong = entry
        return ref() if ref is not None else strong

    def tracked(self) -> list[Any]:
        """Return the live tracked objects."""
        with self._lock:
            entries = list(self._tracked.values())
        return [o for o in (self._deref(e) for e in entries) if o is not None]

    def snapshot(self, source_type: type) -> HeapSnapshot:
        name = _qualified_name(source_type)
        entries = [
            HeapSnapshotEntry(tag=self._tags.issue(obj), class_name=name)
            for obj in self.tracked()
            if type(obj) is source_type
        ]
        return HeapSnapshot(tuple(entries))

    def resolve(self, tag: int) -> Any | None:
        return self._tags.resolve(tag)

    def walk_all(self) -> list[Any]:
        return self.tracked()

    def walk_filtered(self, types: Iterable[type]) -> list[Any]:
        wanted = set(types)
        return [o for o in self.tracked() if type(o) in wanted]

    def advance_epoch(self) -> None:
        self._tags.advance()

    def migrated(self, pairs: Iterable[tuple[Any, Any]]) -> None:
        """Swap each migrated old object for its replacement."""
        for old, new in pairs:
            self.untrack(old)
            self.track(new)

    def internal_containers(self) -> Iterator[Any]:
        """Yield the walker's own bookkeeping objects."""
        yield self
        yield self._tracked
        yield from self._tracked.values()
        yield from self._tags.internal_containers()

    def __len__(self) -> int:
        return len(self._tracked)


__all__ = [
    "HeapWalker",
    "MigrationAwareWalker",
    "GcHeapWalker",
    "TrackedHeapWalker",
]
