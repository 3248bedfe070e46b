"""
Type-hint helpers for finding registries and capability-typed containers.
"""

from __future__ import annotations

import inspect
import logging
import sys
import types
import typing
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Annotated, Any, ClassVar, TypeVar, get_args, get_origin, get_type_hints

from livemigrate.patching import is_runtime_owned
from livemigrate.registry.markers import UpdateRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnnotatedField:
    """
    An annotated field of a class or module.

    Attributes:
        name: Attribute name.
        hint: The declared type with ClassVar and Annotated wrappers removed.
        static: True for ClassVar fields and module globals.
        marker: The UpdateRegistry marker, when the field is a registry.
    """

    name: str
    hint: Any
    static: bool
    marker: UpdateRegistry | None = None


def resolve_hints(scope: type | types.ModuleType) -> dict[str, Any]:
    """
    Resolve the type hints of a class or module, keeping Annotated metadata.

    When the annotations cannot all be resolved (a forward reference to a
    name that does not exist yet), each annotation is resolved on its own
    and the ones that fail are skipped.
    """
    try:
        return get_type_hints(scope, include_extras=True)
    except Exception as e:  # noqa: BLE001 - arbitrary user annotations
        logger.debug("Falling back to per-field hint resolution for %r: %s", scope, e)

    hints: dict[str, Any] = {}
    owners = [k for k in reversed(scope.__mro__) if k is not object] if isinstance(scope, type) else [scope]
    for owner in owners:
        if isinstance(owner, type):
            module = sys.modules.get(owner.__module__)
            globalns = dict(vars(module)) if module is not None else {}
            localns: dict[str, Any] = dict(vars(owner))
        else:
            globalns = dict(vars(owner))
            localns = {}
        globalns.setdefault("typing", typing)
        try:
            raw = inspect.get_annotations(owner)
        except Exception as e:  # noqa: BLE001
            logger.debug("Cannot read annotations of %r: %s", owner, e)
            continue
        for name, annotation in raw.items():
            if isinstance(annotation, str):
                try:
                    annotation = _resolve_annotation(name, annotation, globalns, localns)
                except Exception as e:  # noqa: BLE001
                    logger.debug("Skipping unresolvable annotation %s.%s: %s", owner, name, e)
                    continue
            hints[name] = annotation
    return hints


def _resolve_annotation(name: str, annotation: str, globalns: dict[str, Any], localns: dict[str, Any]) -> Any:
    """Resolve one string annotation the way get_type_hints resolves class fields."""
    holder = type("_AnnotationHolder", (), {})
    holder.__annotations__ = {name: annotation}
    return get_type_hints(holder, globalns, localns, include_extras=True)[name]


def unwrap(hint: Any) -> tuple[Any, bool, tuple[Any, ...]]:
    """
    Strip ClassVar and Annotated layers from a hint.

    Returns:
        Tuple of (inner hint, is ClassVar, collected Annotated metadata)
    """
    static = False
    metadata: list[Any] = []
    while True:
        if hint is ClassVar:
            return Any, True, tuple(metadata)
        origin = get_origin(hint)
        if origin is Annotated:
            metadata.extend(hint.__metadata__)
            hint = hint.__origin__
        elif origin is ClassVar:
            static = True
            args = get_args(hint)
            hint = args[0] if args else Any
        else:
            return hint, static, tuple(metadata)


def annotated_fields(scope: type | types.ModuleType) -> list[AnnotatedField]:
    """List every annotated field of a class (including bases) or module."""
    fields = []
    is_module = isinstance(scope, types.ModuleType)
    for name, hint in resolve_hints(scope).items():
        inner, static, metadata = unwrap(hint)
        marker = next((m for m in metadata if isinstance(m, UpdateRegistry)), None)
        fields.append(AnnotatedField(name=name, hint=inner, static=static or is_module, marker=marker))
    return fields


def declared_registries(scope: type | types.ModuleType) -> list[AnnotatedField]:
    """List the fields of a class or module marked with UpdateRegistry."""
    return [f for f in annotated_fields(scope) if f.marker is not None]


def static_owner(cls: type, name: str) -> type | None:
    """Find the class in ``cls``'s MRO whose namespace holds ``name``."""
    for klass in cls.__mro__:
        if name in vars(klass):
            return klass
    return None


def type_arguments(hint: Any) -> list[Any]:
    """
    Collect every class mentioned in a hint's generic arguments.

    Nested generics are flattened, unions are split and TypeVars contribute
    their bound or constraints.

    Example:
        >>> type_arguments(dict[str, list[User]])
        [str, list, User]
    """
    found: list[Any] = []
    pending = list(get_args(hint))
    seen: set[int] = set()
    while pending:
        arg = pending.pop(0)
        if id(arg) in seen:
            continue
        seen.add(id(arg))
        if isinstance(arg, TypeVar):
            if arg.__bound__ is not None:
                pending.append(arg.__bound__)
            pending.extend(arg.__constraints__)
            continue
        origin = get_origin(arg)
        if origin is Annotated:
            pending.append(arg.__origin__)
            continue
        if origin is not None:
            if isinstance(origin, type):
                found.append(origin)
            pending.extend(get_args(arg))
            continue
        if isinstance(arg, type):
            found.append(arg)
    return found


def matching_capability(hint: Any, capability_types: Iterable[type]) -> type | None:
    """
    Return the first capability type related to one of the hint's type arguments.

    A type argument matches a capability when either one is a subclass of
    the other.
    """
    capabilities = list(capability_types)
    for arg in type_arguments(hint):
        for capability in capabilities:
            try:
                if issubclass(arg, capability) or issubclass(capability, arg):
                    if arg is object or is_runtime_owned(capability):
                        continue
                    return capability
            except TypeError:
                continue
    return None


__all__ = [
    "AnnotatedField",
    "resolve_hints",
    "unwrap",
    "annotated_fields",
    "declared_registries",
    "static_owner",
    "type_arguments",
    "matching_capability",
]
