"""
Recorded write primitives used by the patcher and the registry updater.

Every reference rewrite goes through a MutationWriter so that an optional
MutationRecorder (normally the UndoJournal) learns how to revert it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, MutableMapping, MutableSet
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_MISSING = object()


@runtime_checkable
class MutationRecorder(Protocol):
    """
    Receives a compensating action for every write the engine performs.

    Implementations must not raise from ``record``.
    """

    def record(self, description: str, undo: Callable[[], None]) -> None:
        """
        Remember how to revert one write.

        Args:
            description: Short human readable description of the write
            undo: Zero-argument callable reverting the write
        """
        ...


def keys_equal(a: Any, b: Any) -> bool:
    """Compare two would-be keys, treating a failing ``__eq__`` as unequal."""
    try:
        return bool(a == b)
    except Exception:  # noqa: BLE001 - user-defined __eq__
        return False


class MutationWriter:
    """
    Performs single-slot writes and records their inverse.

    Args:
        recorder: Where compensating actions go; None disables recording
    """

    def __init__(self, recorder: MutationRecorder | None = None) -> None:
        self._recorder = recorder

    @property
    def recorder(self) -> MutationRecorder | None:
        return self._recorder

    def _record(self, description: str, undo: Callable[[], None]) -> None:
        if self._recorder is not None:
            self._recorder.record(description, undo)

    def set_item(self, container: Any, key: Any, value: Any) -> None:
        """Assign ``container[key] = value`` (lists, deques, mappings, __dict__)."""
        previous = container[key]
        container[key] = value

        def undo() -> None:
            container[key] = previous

        self._record(f"item {key!r} of {type(container).__name__}", undo)

    def compare_and_set_item(self, mapping: Any, key: Any, expected: Any, value: Any) -> bool:
        """
        Set ``mapping[key] = value`` only while it still holds ``expected``.

        Returns:
            True if the entry was rewritten
        """
        try:
            current = mapping[key]
        except KeyError:
            return False
        if current is not expected:
            return False
        self.set_item(mapping, key, value)
        return True

    def replace_key(
        self,
        mapping: MutableMapping[Any, Any],
        old_key: Any,
        new_key: Any,
        value: Any,
    ) -> None:
        """
        Move an entry from ``old_key`` to ``new_key`` holding ``value``.

        The new entry is inserted before the old one is dropped, so an observer
        never sees neither. When the keys compare equal the entry has to be
        removed first, or the insert would just overwrite it.
        """
        previous = mapping[old_key]
        description = f"key {old_key!r} of {type(mapping).__name__}"
        if keys_equal(old_key, new_key):
            del mapping[old_key]
            try:
                mapping[new_key] = value
            except Exception:
                mapping[old_key] = previous
                raise

            def undo() -> None:
                mapping.pop(new_key, None)
                mapping[old_key] = previous

            self._record(description, undo)
            return

        displaced = mapping.get(new_key, _MISSING)
        mapping[new_key] = value

        # recorded before the delete so a failing delete still leaves the insert undoable
        def undo_insert() -> None:
            if displaced is _MISSING:
                mapping.pop(new_key, None)
            else:
                mapping[new_key] = displaced

        self._record(f"key {new_key!r} of {type(mapping).__name__}", undo_insert)
        del mapping[old_key]

        def undo_delete() -> None:
            mapping[old_key] = previous

        self._record(description, undo_delete)

    def replace_member(self, members: MutableSet[Any], old: Any, new: Any) -> None:
        """Swap ``old`` for ``new`` in a set, with the same ordering rules as keys."""
        if keys_equal(old, new):
            members.discard(old)
            try:
                members.add(new)
            except Exception:
                members.add(old)
                raise
        else:
            members.add(new)
            members.discard(old)

        def undo() -> None:
            members.discard(new)
            members.add(old)

        self._record(f"member of {type(members).__name__}", undo)

    def set_slot(self, descriptor: Any, obj: Any, value: Any) -> None:
        """Write a ``__slots__`` member through its descriptor, bypassing __setattr__."""
        previous = descriptor.__get__(obj, type(obj))
        descriptor.__set__(obj, value)

        def undo() -> None:
            descriptor.__set__(obj, previous)

        self._record(f"slot {descriptor.__name__} of {type(obj).__name__}", undo)

    def set_class_attr(self, cls: type, name: str, value: Any) -> None:
        """Set a class attribute with ``setattr`` so the type cache stays valid."""
        previous = cls.__dict__[name]
        setattr(cls, name, value)

        def undo() -> None:
            setattr(cls, name, previous)

        self._record(f"class attribute {cls.__qualname__}.{name}", undo)

    def set_attr(self, obj: Any, name: str, value: Any) -> None:
        """Set an attribute through the normal attribute protocol."""
        previous = getattr(obj, name)
        setattr(obj, name, value)

        def undo() -> None:
            setattr(obj, name, previous)

        self._record(f"attribute {name} of {type(obj).__name__}", undo)

    def set_cell(self, cell: Any, value: Any) -> None:
        """Replace the contents of a closure cell."""
        previous = cell.cell_contents
        cell.cell_contents = value

        def undo() -> None:
            cell.cell_contents = previous

        self._record("closure cell", undo)

    def set_partial_state(self, partial: Any, args: tuple[Any, ...], keywords: dict[str, Any]) -> None:
        """Rewrite the bound arguments of a functools.partial in place."""
        previous = partial.__reduce__()[2]
        partial.__setstate__((partial.func, args, keywords, partial.__dict__ or None))

        def undo() -> None:
            partial.__setstate__(previous)

        self._record("functools.partial arguments", undo)


__all__ = ["MutationRecorder", "MutationWriter", "keys_equal"]
