"""
Unit tests for MutationWriter.

Tests cover:
- Each write primitive and its recorded inverse
- Key and member swaps between equal objects
- Key swaps whose delete fails or that displace an entry
- compare_and_set_item
- Writers without a recorder
"""

from __future__ import annotations

import functools

import pytest

from livemigrate import UndoJournal
from livemigrate.patching import MutationRecorder, MutationWriter
from livemigrate.patching.mutations import keys_equal
from tests.fixtures import Session, UserV1, UserV2


class Tagged:
    """Objects that compare equal by tag."""

    def __init__(self, tag: str) -> None:
        self.tag = tag

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Tagged) and other.tag == self.tag

    def __hash__(self) -> int:
        return hash(self.tag)


class Settings:
    mode = "old"


class BrokenEq:
    def __eq__(self, other: object) -> bool:
        raise RuntimeError("no comparison")

    __hash__ = object.__hash__


@pytest.fixture
def journal() -> UndoJournal:
    return UndoJournal()


@pytest.fixture
def writer(journal) -> MutationWriter:
    return MutationWriter(journal)


class TestWritePrimitives:
    """Tests for each write and its undo."""

    def test_set_item(self, writer, journal):
        """Item writes are reverted."""
        items = ["a", "b"]
        writer.set_item(items, 1, "c")

        assert items == ["a", "c"]
        journal.restore_from_checkpoint()
        assert items == ["a", "b"]

    def test_replace_key(self, writer, journal):
        """A key swap keeps the value and is reverted."""
        old, new = UserV1("ada"), UserV2("ada", "")
        mapping = {old: 1}
        writer.replace_key(mapping, old, new, 2)

        assert mapping == {new: 2}
        journal.restore_from_checkpoint()
        assert mapping == {old: 1}

    def test_replace_key_failing_delete_is_reverted(self, writer, journal):
        """An insert whose follow-up delete failed is still undone."""

        class StickyDict(dict):
            def __delitem__(self, key):
                raise RuntimeError("entry pinned")

        old, new = UserV1("ada"), UserV2("ada", "")
        mapping = StickyDict({old: 1})

        with pytest.raises(RuntimeError, match="entry pinned"):
            writer.replace_key(mapping, old, new, 2)

        assert mapping == {old: 1, new: 2}
        assert len(journal) == 1
        journal.restore_from_checkpoint()
        assert mapping == {old: 1}

    def test_replace_key_restores_displaced_entry(self, writer, journal):
        old, new = UserV1("ada"), UserV2("ada", "")
        mapping = {old: 1, new: 0}
        writer.replace_key(mapping, old, new, 2)

        assert mapping == {new: 2}
        journal.restore_from_checkpoint()
        assert mapping == {old: 1, new: 0}

    def test_replace_equal_key(self, writer):
        """Equal keys are removed before the insert."""
        old, new = Tagged("a"), Tagged("a")
        mapping = {old: "value"}
        writer.replace_key(mapping, old, new, "value")

        (key,) = mapping
        assert key is new

    def test_replace_member(self, writer, journal):
        """Set member swaps are reverted."""
        old, new = UserV1("ada"), UserV2("ada", "")
        members = {old}
        writer.replace_member(members, old, new)

        assert members == {new}
        journal.restore_from_checkpoint()
        assert members == {old}

    def test_replace_equal_member(self, writer):
        """Equal members are swapped, not deduplicated."""
        old, new = Tagged("a"), Tagged("a")
        members = {old}
        writer.replace_member(members, old, new)

        (member,) = members
        assert member is new

    def test_set_slot(self, writer, journal):
        """Slot writes go through the member descriptor."""
        old, new = UserV1("ada"), UserV2("ada", "")
        session = Session(old)
        writer.set_slot(Session.__dict__["user"], session, new)

        assert session.user is new
        journal.restore_from_checkpoint()
        assert session.user is old

    def test_set_class_attr(self, writer, journal):
        """Class attributes are set and reverted with setattr."""
        writer.set_class_attr(Settings, "mode", "new")

        assert Settings.mode == "new"
        journal.restore_from_checkpoint()
        assert Settings.mode == "old"

    def test_set_attr(self, writer, journal):
        """Plain attribute writes are reverted."""
        user = UserV1("ada")
        writer.set_attr(user, "email", "ada@example.com")

        assert user.email == "ada@example.com"
        journal.restore_from_checkpoint()
        assert user.email == ""

    def test_set_cell(self, writer, journal):
        """Closure cells are rewritten and reverted."""
        value = "before"
        read = lambda: value  # noqa: E731
        cell = read.__closure__[0]
        writer.set_cell(cell, "after")

        assert read() == "after"
        journal.restore_from_checkpoint()
        assert read() == "before"

    def test_set_partial_state(self, writer, journal):
        """Partial arguments are rewritten in place and reverted."""
        bound = functools.partial(max, 1, key=abs)
        writer.set_partial_state(bound, (-5,), {"key": abs})

        assert bound.args == (-5,)
        journal.restore_from_checkpoint()
        assert bound.args == (1,)


class TestCompareAndSet:
    """Tests for compare_and_set_item."""

    def test_rewrites_expected_value(self, writer):
        """The entry is rewritten while it holds the expected object."""
        old = UserV1("ada")
        mapping = {"u": old}

        assert writer.compare_and_set_item(mapping, "u", old, "new") is True
        assert mapping["u"] == "new"

    def test_skips_changed_value(self, writer):
        """A concurrently changed entry is left alone."""
        mapping = {"u": "other"}

        assert writer.compare_and_set_item(mapping, "u", UserV1("ada"), "new") is False
        assert mapping["u"] == "other"

    def test_skips_missing_key(self, writer):
        """A missing key is reported, not created."""
        mapping: dict = {}

        assert writer.compare_and_set_item(mapping, "u", None, "new") is False
        assert mapping == {}


class TestWriterWithoutRecorder:
    """Tests for writers that record nothing."""

    def test_writes_without_recorder(self):
        """Writes still happen without a recorder."""
        writer = MutationWriter()
        items = [1]
        writer.set_item(items, 0, 2)

        assert items == [2]
        assert writer.recorder is None

    def test_journal_is_a_recorder(self, journal):
        """UndoJournal satisfies the MutationRecorder protocol."""
        assert isinstance(journal, MutationRecorder)


class TestKeysEqual:
    """Tests for keys_equal."""

    def test_equal_and_unequal(self):
        assert keys_equal(Tagged("a"), Tagged("a"))
        assert not keys_equal(Tagged("a"), Tagged("b"))

    def test_failing_eq_is_unequal(self):
        """A raising __eq__ reads as unequal."""
        assert not keys_equal(BrokenEq(), object())
