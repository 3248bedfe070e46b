"""
Identity-keyed forwarding table mapping old instances to their replacements.

The table is the single source of truth for "this object has been migrated,
use that one instead". Lookups compare object identity only, so two old
objects that are equal (``==``) and hash alike are still forwarded
independently.

The old side is held weakly wherever the object supports weak references;
entries whose old object was collected disappear lazily on the next table
operation. Objects without weak reference support (builtin containers,
slotted classes without ``__weakref__``) are held strongly until the entry
is removed or the table is cleared.

Example:
    >>> table = ForwardingTable()
    >>> table.put(old_user, new_user)
    >>> table.get(old_user) is new_user
    True
    >>> table.get(OldUser(**vars(old_user)))  # equal but distinct
    None
"""

from __future__ import annotations

import logging
import weakref
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger(__name__)


class ForwardingTable:
    """
    Identity-keyed, weak-on-the-old-side map of old object to new object.

    Not internally locked: a table belongs to a single migration attempt,
    which runs in one task.
    """

    def __init__(self) -> None:
        # id(old) -> (weakref to old or None, strong old or None, new)
        self._entries: dict[int, tuple[weakref.ref[Any] | None, Any, Any]] = {}
        self._collected: list[tuple[int, weakref.ref[Any]]] = []

    def _purge(self) -> None:
        while self._collected:
            key, ref = self._collected.pop()
            entry = self._entries.get(key)
            # the id may have been reused by a newer entry
            if entry is not None and entry[0] is ref:
                del self._entries[key]
                logger.debug("Dropped forwarding entry for collected object id=%#x", key)

    def _make_entry(self, old: Any, new: Any) -> tuple[weakref.ref[Any] | None, Any, Any]:
        key = id(old)
        collected = self._collected
        try:
            ref = weakref.ref(old, lambda r: collected.append((key, r)))
        except TypeError:
            return (None, old, new)
        return (ref, None, new)

    @staticmethod
    def _referent(entry: tuple[weakref.ref[Any] | None, Any, Any]) -> Any:
        ref, strong, _ = entry
        return ref() if ref is not None else strong

    def put(self, old: Any, new: Any) -> None:
        """
        Record that ``old`` is replaced by ``new``.

        An existing entry for the same object is overwritten.
        """
        self._purge()
        self._entries[id(old)] = self._make_entry(old, new)

    def get(self, old: Any, default: Any = None) -> Any:
        """
        Return the replacement for ``old``, or ``default`` if it is not forwarded.
        """
        self._purge()
        entry = self._entries.get(id(old))
        if entry is None or self._referent(entry) is not old:
            return default
        return entry[2]

    def contains(self, old: Any) -> bool:
        """Check whether ``old`` (by identity) has a replacement."""
        self._purge()
        entry = self._entries.get(id(old))
        return entry is not None and self._referent(entry) is old

    def remove(self, old: Any) -> bool:
        """
        Remove the entry for ``old``.

        Returns:
            True if an entry was removed
        """
        self._purge()
        key = id(old)
        entry = self._entries.get(key)
        if entry is None or self._referent(entry) is not old:
            return False
        del self._entries[key]
        return True

    def clear(self) -> None:
        """Remove every entry."""
        self._entries.clear()
        self._collected.clear()

    def items(self) -> list[tuple[Any, Any]]:
        """Return the live (old, new) pairs."""
        self._purge()
        pairs = []
        for entry in self._entries.values():
            old = self._referent(entry)
            if old is not None:
                pairs.append((old, entry[2]))
        return pairs

    def internal_containers(self) -> Iterator[Any]:
        """
        Yield the table's own storage objects.

        The patcher must never rewrite these while walking the heap, or the
        table would start forwarding new objects to themselves.
        """
        yield self
        yield self._entries
        yield self._collected
        yield from self._entries.values()

    def __len__(self) -> int:
        self._purge()
        return len(self._entries)

    def __contains__(self, old: object) -> bool:
        return self.contains(old)

    def __repr__(self) -> str:
        return f"ForwardingTable(entries={len(self._entries)})"


__all__ = ["ForwardingTable"]
