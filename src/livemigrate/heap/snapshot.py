"""
Heap snapshots and their binary wire format.

A snapshot is the ordered list of (tag, class name) pairs a heap walker
reports for one source class. Tags are opaque handles that the same walker
resolves back to live objects until its epoch advances.

Wire format (all integers big-endian, signed):
    count:   4 bytes
    entries: count times
        tag:    8 bytes
        length: 4 bytes
        name:   ``length`` bytes of UTF-8

Decoding is lenient: fewer than 4 bytes or a non-positive count yields an
empty snapshot, and a truncated entry (or a length that is negative or runs
past the end of the data) ends the snapshot at that entry.
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

_COUNT = struct.Struct(">i")
_ENTRY_HEADER = struct.Struct(">qi")


@dataclass(frozen=True)
class HeapSnapshotEntry:
    """
    One live instance reported by a heap walker.

    Attributes:
        tag: Opaque handle, resolvable through the walker until the next epoch.
        class_name: Reported class name of the instance.
    """

    tag: int
    class_name: str


@dataclass(frozen=True)
class HeapSnapshot:
    """Ordered, immutable list of snapshot entries."""

    entries: tuple[HeapSnapshotEntry, ...] = field(default_factory=tuple)

    @classmethod
    def empty(cls) -> HeapSnapshot:
        return cls(())

    @classmethod
    def from_bytes(cls, data: bytes | bytearray | memoryview | None) -> HeapSnapshot:
        """
        Decode a snapshot from its wire format.

        Args:
            data: Encoded snapshot (None is treated as empty)

        Returns:
            The decoded snapshot, possibly truncated
        """
        if data is None or len(data) < _COUNT.size:
            return cls.empty()
        buffer = bytes(data)
        (count,) = _COUNT.unpack_from(buffer, 0)
        if count <= 0:
            return cls.empty()

        entries: list[HeapSnapshotEntry] = []
        offset = _COUNT.size
        for index in range(count):
            if len(buffer) - offset < _ENTRY_HEADER.size:
                logger.debug("Snapshot truncated at entry %d of %d (header)", index, count)
                break
            tag, length = _ENTRY_HEADER.unpack_from(buffer, offset)
            offset += _ENTRY_HEADER.size
            if length < 0 or length > len(buffer) - offset:
                logger.debug("Snapshot truncated at entry %d of %d (name length %d)", index, count, length)
                break
            name = buffer[offset : offset + length].decode("utf-8", errors="replace")
            offset += length
            entries.append(HeapSnapshotEntry(tag=tag, class_name=name))
        return cls(tuple(entries))

    def to_bytes(self) -> bytes:
        """Encode the snapshot in its wire format."""
        parts = [_COUNT.pack(len(self.entries))]
        for entry in self.entries:
            name = entry.class_name.encode("utf-8")
            parts.append(_ENTRY_HEADER.pack(entry.tag, len(name)))
            parts.append(name)
        return b"".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [{"tag": e.tag, "class_name": e.class_name} for e in self.entries],
        }

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[HeapSnapshotEntry]:
        return iter(self.entries)

    def __bool__(self) -> bool:
        return bool(self.entries)


__all__ = ["HeapSnapshot", "HeapSnapshotEntry"]
