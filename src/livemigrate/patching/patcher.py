"""
Reference graph patcher.

Walks object graphs and rewrites every reference to a forwarded (old)
object so that it points at the replacement recorded in the
ForwardingTable.

The walk is an explicit-stack depth-first traversal with a visited set keyed
by object identity, so deep or cyclic graphs terminate without touching the
interpreter's recursion limit.

What gets rewritten:
- instance attributes in ``__dict__`` and in ``__slots__`` (written
  underneath ``__setattr__``, so frozen dataclasses and frozen pydantic
  models are patched too)
- elements of mutable sequences, members of mutable sets, keys and values of
  mutable mappings
- closure cells and ``threading.local`` attributes
- immutable containers (tuple, named tuple, frozenset, mappingproxy,
  weakref.ref, settled futures other than asyncio tasks) are rebuilt and installed in the slot that
  holds them
- ``functools.partial`` bound arguments

Objects whose class comes from the standard library are walked through but
their own attributes are never rewritten; containers are always patched.

Example:
    >>> forwarding = ForwardingTable()
    >>> forwarding.put(old_user, new_user)
    >>> patcher = ReferenceGraphPatcher(forwarding)
    >>> patcher.patch_object(session_cache)
    3
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import logging
import sys
import threading
import types
import weakref
from collections.abc import Iterable, Mapping, MutableMapping, MutableSequence, MutableSet, Set
from enum import Enum
from typing import Any

from livemigrate.forwarding import ForwardingTable
from livemigrate.observability import ATTR_SLOTS_PATCHED, Tracer, create_tracer
from livemigrate.patching.mutations import MutationRecorder, MutationWriter

logger = logging.getLogger(__name__)

_UNCHANGED = object()

# Never traversed: values without outgoing references worth patching,
# plus code-ish objects whose references belong to the interpreter.
_OPAQUE_TYPES: tuple[type, ...] = (
    type(None),
    bool,
    int,
    float,
    complex,
    str,
    bytes,
    bytearray,
    memoryview,
    range,
    slice,
    type,
    types.ModuleType,
    types.FunctionType,
    types.BuiltinFunctionType,
    types.MethodType,
    types.BuiltinMethodType,
    types.CodeType,
    types.FrameType,
    types.TracebackType,
    types.GeneratorType,
    types.CoroutineType,
    types.AsyncGeneratorType,
    types.GetSetDescriptorType,
    types.MemberDescriptorType,
    types.WrapperDescriptorType,
    types.MethodWrapperType,
    types.MethodDescriptorType,
    types.ClassMethodDescriptorType,
    property,
    staticmethod,
    classmethod,
    Enum,
    ForwardingTable,
)

_runtime_owned_cache: weakref.WeakKeyDictionary[type, bool] = weakref.WeakKeyDictionary()
_slot_cache: weakref.WeakKeyDictionary[type, list[Any]] = weakref.WeakKeyDictionary()


def is_runtime_owned(cls: type) -> bool:
    """
    Check whether a class is defined by the interpreter or the standard library.

    Instances of such classes are traversed but their attributes are not
    rewritten.
    """
    cached = _runtime_owned_cache.get(cls)
    if cached is None:
        module = getattr(cls, "__module__", None)
        if not isinstance(module, str):
            module = "builtins"
        root = module.partition(".")[0]
        cached = root in sys.stdlib_module_names
        _runtime_owned_cache[cls] = cached
    return cached


def slot_descriptors(cls: type) -> list[Any]:
    """Return the member descriptors for every ``__slots__`` entry in the MRO."""
    cached = _slot_cache.get(cls)
    if cached is not None:
        return cached
    descriptors = []
    for klass in cls.__mro__:
        slots = klass.__dict__.get("__slots__", ())
        if isinstance(slots, str):
            slots = (slots,)
        for name in slots:
            if name in ("__dict__", "__weakref__"):
                continue
            if name.startswith("__") and not name.endswith("__"):
                name = f"_{klass.__name__.lstrip('_')}{name}"
            descriptor = klass.__dict__.get(name)
            if isinstance(descriptor, types.MemberDescriptorType):
                descriptors.append(descriptor)
    _slot_cache[cls] = descriptors
    return descriptors


class ReferenceGraphPatcher:
    """
    Rewrites references to forwarded objects reachable from given roots.

    Args:
        forwarding: Table of old → new replacements
        recorder: Optional recorder notified of every write (undo journal)
        tracer: Optional tracer for spans
        enable_tracing: Whether to create a tracer when none is given
    """

    def __init__(
        self,
        forwarding: ForwardingTable,
        *,
        recorder: MutationRecorder | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._forwarding = forwarding
        self._writer = MutationWriter(recorder)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._protected: dict[int, Any] = {}

    @property
    def forwarding(self) -> ForwardingTable:
        return self._forwarding

    @property
    def writer(self) -> MutationWriter:
        return self._writer

    def protect(self, *objects: Any) -> None:
        """
        Exclude objects from every future walk.

        Protected objects are neither entered nor rewritten. The patcher keeps
        a reference to them so their identity cannot be reused.
        """
        for obj in objects:
            self._protected[id(obj)] = obj

    def protect_all(self, objects: Iterable[Any]) -> None:
        """Protect every object in ``objects``."""
        self.protect(*objects)

    def unprotect_all(self) -> None:
        """Forget every protected object."""
        self._protected.clear()

    def is_protected(self, obj: Any) -> bool:
        return obj is self._protected or self._protected.get(id(obj)) is obj

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def patch_object(self, root: Any) -> int:
        """
        Patch every forwarded reference reachable from ``root``.

        Args:
            root: Start of the walk. The root itself is never replaced.

        Returns:
            Number of reference slots rewritten
        """
        return self.patch_objects((root,))

    def patch_objects(self, roots: Iterable[Any]) -> int:
        """
        Patch everything reachable from several roots in a single walk.

        The visited set is shared between the roots, so an object reachable
        from more than one root is patched once.

        Returns:
            Number of reference slots rewritten
        """
        with self._tracer.span("livemigrate.patcher.patch_objects") as span:
            stack = list(roots)
            stack.reverse()
            count = self._walk(stack, {})
            if span is not None:
                span.set_attribute(ATTR_SLOTS_PATCHED, count)
            return count

    def patch_static_fields(self, cls: type) -> int:
        """
        Patch class-level state of ``cls`` and its non-runtime base classes.

        Functions, descriptors, nested classes, modules and dunder names are
        skipped. Values held in the remaining class attributes are walked.

        Returns:
            Number of reference slots rewritten
        """
        count = 0
        visited: dict[int, Any] = {}
        stack: list[Any] = []
        for klass in cls.__mro__:
            if klass is object or is_runtime_owned(klass) or self.is_protected(klass):
                continue
            for name, value in list(vars(klass).items()):
                if _is_dunder(name) or hasattr(type(value), "__get__"):
                    continue
                if isinstance(value, (type, types.ModuleType)):
                    continue
                replacement = self._replacement(value, {})
                if replacement is not _UNCHANGED:
                    try:
                        self._writer.set_class_attr(klass, name, replacement)
                        count += 1
                        value = replacement
                    except Exception as e:  # noqa: BLE001 - per-field best effort
                        logger.debug("Cannot patch %s.%s: %s", klass.__qualname__, name, e)
                stack.append(value)
        return count + self._walk(stack, visited)

    def patch_module_globals(self, module: types.ModuleType) -> int:
        """
        Patch a module's global namespace and everything reachable from it.

        Classes, functions and submodules are skipped; use
        ``patch_static_fields`` for class-level state.

        Returns:
            Number of reference slots rewritten
        """
        namespace = vars(module)
        if self.is_protected(namespace):
            return 0
        count = 0
        stack: list[Any] = []
        for name, value in list(namespace.items()):
            if _is_dunder(name) or isinstance(value, _OPAQUE_TYPES):
                continue
            replacement = self._replacement(value, {})
            if replacement is not _UNCHANGED:
                try:
                    self._writer.set_item(namespace, name, replacement)
                    count += 1
                    value = replacement
                except Exception as e:  # noqa: BLE001 - per-field best effort
                    logger.debug("Cannot patch %s.%s: %s", module.__name__, name, e)
            stack.append(value)
        return count + self._walk(stack, {id(namespace): namespace})

    # ------------------------------------------------------------------
    # Replacement computation
    # ------------------------------------------------------------------

    def _replacement(self, value: Any, memo: dict[int, tuple[Any, Any]]) -> Any:
        """
        Return the value a slot holding ``value`` should hold instead.

        Returns ``_UNCHANGED`` when the slot is already correct. Immutable
        containers holding forwarded values come back rebuilt.
        """
        if isinstance(value, _OPAQUE_TYPES):
            return _UNCHANGED
        new = self._forwarding.get(value, _UNCHANGED)
        if new is not _UNCHANGED:
            return new
        if self.is_protected(value):
            return _UNCHANGED
        key = id(value)
        hit = memo.get(key)
        if hit is not None and hit[0] is value:
            return hit[1]
        memo[key] = (value, _UNCHANGED)
        try:
            rebuilt = self._rebuild(value, memo)
        except Exception as e:  # noqa: BLE001 - per-field best effort
            logger.debug("Cannot rebuild %s: %s", type(value).__name__, e)
            rebuilt = _UNCHANGED
        memo[key] = (value, rebuilt)
        return rebuilt

    def _rebuild(self, value: Any, memo: dict[int, tuple[Any, Any]]) -> Any:
        if isinstance(value, tuple):
            items = [self._replacement(v, memo) for v in value]
            if all(r is _UNCHANGED for r in items):
                return _UNCHANGED
            merged = [v if r is _UNCHANGED else r for v, r in zip(value, items, strict=True)]
            if hasattr(type(value), "_make"):
                return type(value)._make(merged)
            if type(value) is tuple:
                return tuple(merged)
            return type(value)(merged)
        if isinstance(value, frozenset):
            items = [(v, self._replacement(v, memo)) for v in value]
            if all(r is _UNCHANGED for _, r in items):
                return _UNCHANGED
            return type(value)(v if r is _UNCHANGED else r for v, r in items)
        if isinstance(value, types.MappingProxyType):
            changed = False
            rebuilt: dict[Any, Any] = {}
            for k, v in value.items():
                rk = self._replacement(k, memo)
                rv = self._replacement(v, memo)
                changed = changed or rk is not _UNCHANGED or rv is not _UNCHANGED
                rebuilt[k if rk is _UNCHANGED else rk] = v if rv is _UNCHANGED else rv
            return types.MappingProxyType(rebuilt) if changed else _UNCHANGED
        if type(value) is weakref.ref:
            referent = value()
            if referent is None:
                return _UNCHANGED
            new = self._forwarding.get(referent, _UNCHANGED)
            if new is _UNCHANGED:
                return _UNCHANGED
            return weakref.ref(new, value.__callback__)
        # tasks are never swapped for plain futures
        if isinstance(value, (concurrent.futures.Future, asyncio.Future)) and not isinstance(value, asyncio.Task):
            return self._rebuild_future(value)
        return _UNCHANGED

    def _rebuild_future(self, future: Any) -> Any:
        if not future.done() or future.cancelled() or future.exception() is not None:
            return _UNCHANGED
        new = self._forwarding.get(future.result(), _UNCHANGED)
        if new is _UNCHANGED:
            return _UNCHANGED
        if isinstance(future, asyncio.Future):
            replacement = future.get_loop().create_future()
        else:
            replacement = concurrent.futures.Future()
        replacement.set_result(new)
        return replacement

    # ------------------------------------------------------------------
    # Walk
    # ------------------------------------------------------------------

    def _walk(self, stack: list[Any], visited: dict[int, Any]) -> int:
        count = 0
        memo: dict[int, tuple[Any, Any]] = {}
        while stack:
            obj = stack.pop()
            key = id(obj)
            if key in visited or isinstance(obj, _OPAQUE_TYPES) or self.is_protected(obj):
                continue
            visited[key] = obj
            try:
                count += self._patch_one(obj, stack, visited, memo)
            except Exception as e:  # noqa: BLE001 - keep walking the rest of the graph
                logger.debug("Skipping %s during patch: %s", type(obj).__name__, e)
        return count

    def _patch_one(self, obj: Any, stack: list[Any], visited: dict[int, Any], memo: dict[int, tuple[Any, Any]]) -> int:
        count = 0
        if isinstance(obj, MutableMapping):
            count += self._patch_mapping(obj, stack, memo)
        elif isinstance(obj, MutableSequence):
            count += self._patch_sequence(obj, stack, memo)
        elif isinstance(obj, MutableSet):
            count += self._patch_set(obj, stack, memo)
        elif isinstance(obj, (tuple, frozenset, Set)):
            stack.extend(obj)
        elif isinstance(obj, Mapping):
            for k, v in obj.items():
                stack.append(k)
                stack.append(v)
        elif isinstance(obj, types.CellType):
            count += self._patch_cell(obj, stack, memo)
        elif type(obj) is weakref.ref:
            referent = obj()
            if referent is not None:
                stack.append(referent)
        elif isinstance(obj, functools.partial):
            count += self._patch_partial(obj, stack, memo)

        if isinstance(obj, threading.local):
            count += self._patch_mapping(obj.__dict__, stack, memo)
            return count

        cls = type(obj)
        namespace = getattr(obj, "__dict__", None)
        if is_runtime_owned(cls):
            if isinstance(namespace, dict):
                stack.extend(namespace.values())
            return count

        if isinstance(namespace, dict) and not self.is_protected(namespace):
            visited[id(namespace)] = namespace
            count += self._patch_mapping(namespace, stack, memo, values_only=True)
        for descriptor in slot_descriptors(cls):
            count += self._patch_slot(obj, descriptor, stack, memo)
        return count

    def _patch_mapping(
        self,
        mapping: MutableMapping[Any, Any],
        stack: list[Any],
        memo: dict[int, tuple[Any, Any]],
        *,
        values_only: bool = False,
    ) -> int:
        count = 0
        for k, v in list(mapping.items()):
            rk = _UNCHANGED if values_only else self._replacement(k, memo)
            rv = self._replacement(v, memo)
            new_value = v if rv is _UNCHANGED else rv
            try:
                if rk is not _UNCHANGED:
                    self._writer.replace_key(mapping, k, rk, new_value)
                    count += 1 + (rv is not _UNCHANGED)
                    k = rk
                elif rv is not _UNCHANGED:
                    self._writer.set_item(mapping, k, new_value)
                    count += 1
            except Exception as e:  # noqa: BLE001 - per-entry best effort
                logger.debug("Cannot patch entry %r of %s: %s", k, type(mapping).__name__, e)
            if not values_only:
                stack.append(k)
            stack.append(new_value)
        return count

    def _patch_sequence(self, seq: MutableSequence[Any], stack: list[Any], memo: dict[int, tuple[Any, Any]]) -> int:
        count = 0
        for index, v in enumerate(list(seq)):
            rv = self._replacement(v, memo)
            if rv is not _UNCHANGED:
                try:
                    self._writer.set_item(seq, index, rv)
                    count += 1
                    v = rv
                except Exception as e:  # noqa: BLE001 - per-element best effort
                    logger.debug("Cannot patch index %d of %s: %s", index, type(seq).__name__, e)
            stack.append(v)
        return count

    def _patch_set(self, members: MutableSet[Any], stack: list[Any], memo: dict[int, tuple[Any, Any]]) -> int:
        count = 0
        for v in list(members):
            rv = self._replacement(v, memo)
            if rv is not _UNCHANGED:
                try:
                    self._writer.replace_member(members, v, rv)
                    count += 1
                    v = rv
                except Exception as e:  # noqa: BLE001 - per-member best effort
                    logger.debug("Cannot patch member of %s: %s", type(members).__name__, e)
            stack.append(v)
        return count

    def _patch_cell(self, cell: types.CellType, stack: list[Any], memo: dict[int, tuple[Any, Any]]) -> int:
        try:
            value = cell.cell_contents
        except ValueError:
            return 0
        replacement = self._replacement(value, memo)
        if replacement is _UNCHANGED:
            stack.append(value)
            return 0
        self._writer.set_cell(cell, replacement)
        stack.append(replacement)
        return 1

    def _patch_slot(self, obj: Any, descriptor: Any, stack: list[Any], memo: dict[int, tuple[Any, Any]]) -> int:
        try:
            value = descriptor.__get__(obj, type(obj))
        except AttributeError:
            return 0
        replacement = self._replacement(value, memo)
        if replacement is _UNCHANGED:
            stack.append(value)
            return 0
        try:
            self._writer.set_slot(descriptor, obj, replacement)
        except Exception as e:  # noqa: BLE001 - per-field best effort
            logger.debug("Cannot patch slot %s of %s: %s", descriptor.__name__, type(obj).__name__, e)
            stack.append(value)
            return 0
        stack.append(replacement)
        return 1

    def _patch_partial(self, partial: functools.partial[Any], stack: list[Any], memo: dict[int, tuple[Any, Any]]) -> int:
        changed = 0
        args = []
        for v in partial.args:
            rv = self._replacement(v, memo)
            if rv is not _UNCHANGED:
                changed += 1
                v = rv
            args.append(v)
        keywords = {}
        for name, v in partial.keywords.items():
            rv = self._replacement(v, memo)
            if rv is not _UNCHANGED:
                changed += 1
                v = rv
            keywords[name] = v
        if changed:
            self._writer.set_partial_state(partial, tuple(args), keywords)
        stack.extend(args)
        stack.extend(keywords.values())
        return changed


def _is_dunder(name: str) -> bool:
    return name.startswith("__") and name.endswith("__")


__all__ = ["ReferenceGraphPatcher", "is_runtime_owned", "slot_descriptors"]
