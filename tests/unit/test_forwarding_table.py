"""
Unit tests for ForwardingTable.

Tests cover:
- Identity semantics (equal but distinct objects are forwarded independently)
- Weak references on the old side and lazy purging
- Strong entries for objects without weak reference support
- Removal, clearing and iteration
- Internal containers exposed for patcher protection
"""

from __future__ import annotations

import gc
from dataclasses import dataclass

from livemigrate import ForwardingTable
from tests.fixtures import UserV1, UserV2


@dataclass(eq=True, unsafe_hash=True)
class Point:
    x: int
    y: int


class TestIdentity:
    """Tests for identity-keyed lookups."""

    def test_put_and_get(self):
        """A forwarded object maps to its replacement."""
        table = ForwardingTable()
        old, new = UserV1("ada"), UserV2("ada", "")
        table.put(old, new)

        assert table.get(old) is new
        assert table.contains(old)
        assert old in table

    def test_equal_objects_are_distinct_keys(self):
        """Two equal, equally hashed objects are forwarded independently."""
        table = ForwardingTable()
        a, b = Point(1, 2), Point(1, 2)
        replacement = Point(3, 4)
        table.put(a, replacement)

        assert a == b and hash(a) == hash(b)
        assert table.get(a) is replacement
        assert table.get(b) is None
        assert not table.contains(b)

    def test_get_default(self):
        """get returns the default for unknown objects."""
        table = ForwardingTable()
        marker = object()
        assert table.get(UserV1("x"), marker) is marker

    def test_put_overwrites(self):
        """A second put for the same object replaces the first entry."""
        table = ForwardingTable()
        old = UserV1("ada")
        first, second = UserV2("a", ""), UserV2("b", "")
        table.put(old, first)
        table.put(old, second)

        assert table.get(old) is second
        assert len(table) == 1


class TestWeakOldSide:
    """Tests for weak holding of old objects."""

    def test_collected_old_object_disappears(self):
        """Entries vanish once their old object is garbage collected."""
        table = ForwardingTable()
        new = UserV2("ada", "")
        table.put(UserV1("ada"), new)
        gc.collect()

        assert len(table) == 0
        assert table.items() == []

    def test_new_object_kept_alive(self):
        """The replacement is held strongly."""
        table = ForwardingTable()
        old = UserV1("ada")
        table.put(old, UserV2("ada", ""))
        gc.collect()

        assert isinstance(table.get(old), UserV2)

    def test_unweakrefable_old_held_strongly(self):
        """Builtin containers are forwarded with a strong reference."""
        table = ForwardingTable()
        old = [1, 2]
        new = [1, 2, 3]
        table.put(old, new)

        assert table.get(old) is new
        assert table.get([1, 2]) is None


class TestMaintenance:
    """Tests for remove, clear and items."""

    def test_remove(self):
        """remove deletes the entry and reports whether it existed."""
        table = ForwardingTable()
        old = UserV1("ada")
        table.put(old, UserV2("ada", ""))

        assert table.remove(old) is True
        assert table.remove(old) is False
        assert not table.contains(old)

    def test_remove_distinct_equal_object(self):
        """remove with an equal but distinct object removes nothing."""
        table = ForwardingTable()
        a = Point(1, 1)
        table.put(a, Point(2, 2))

        assert table.remove(Point(1, 1)) is False
        assert len(table) == 1

    def test_clear(self):
        """clear empties the table."""
        table = ForwardingTable()
        keep = [UserV1("a"), UserV1("b")]
        for user in keep:
            table.put(user, UserV2(user.name, ""))
        table.clear()

        assert len(table) == 0

    def test_items(self):
        """items returns the live pairs."""
        table = ForwardingTable()
        old, new = UserV1("ada"), UserV2("ada", "")
        table.put(old, new)

        assert table.items() == [(old, new)]

    def test_internal_containers(self):
        """The table exposes itself and its storage."""
        table = ForwardingTable()
        old = UserV1("ada")
        table.put(old, UserV2("ada", ""))
        containers = list(table.internal_containers())

        assert containers[0] is table
        assert any(isinstance(c, dict) for c in containers)
        assert any(isinstance(c, tuple) for c in containers)

    def test_repr(self):
        """repr shows the entry count."""
        assert repr(ForwardingTable()) == "ForwardingTable(entries=0)"
