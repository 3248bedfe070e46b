"""
Migrators and migration plans.

A ClassMigrator converts one instance of an old class into an instance of
its replacement. A MigratorDescriptor ties a converter to its source and
target classes and to the capability type they share. A MigrationPlan is
the validated, ordered set of descriptors one migration runs.

Example:
    >>> class UserV2Migrator(ClassMigrator[UserV1, UserV2]):
    ...     def migrate(self, old: UserV1) -> UserV2:
    ...         first, _, last = old.name.partition(" ")
    ...         return UserV2(first=first, last=last, email=old.email)
    ...
    ...     def validate(self, migrated: UserV2) -> None:
    ...         if not migrated.email:
    ...             raise ValueError("email lost during migration")
    >>>
    >>> plan = MigrationPlan.build([UserV2Migrator])
    >>> plan.target_of(UserV1) is UserV2
    True
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Generic, TypeVar, cast, get_args, get_origin

from livemigrate.exceptions import PlanError
from livemigrate.patching import is_runtime_owned

logger = logging.getLogger(__name__)

OldT = TypeVar("OldT")
NewT = TypeVar("NewT")


class ClassMigrator(ABC, Generic[OldT, NewT]):
    """
    Converts instances of ``OldT`` into instances of ``NewT``.

    Subclasses parameterize the generic so the plan can infer the source and
    target classes: ``class M(ClassMigrator[Old, New])``.
    """

    @abstractmethod
    def migrate(self, old: OldT) -> NewT:
        """
        Build the replacement for one old instance.

        Must not return None. Raising aborts the whole migration.
        """

    def validate(self, migrated: NewT) -> None:  # noqa: B027 - optional hook
        """Optionally check a freshly built instance; raise to abort."""

    @classmethod
    def migration_types(cls) -> tuple[type, type] | None:
        """
        Return the (old, new) classes this migrator was parameterized with.

        Walks the MRO looking for the ``ClassMigrator[Old, New]`` base.
        """
        for base in cls.__mro__:
            for orig_base in getattr(base, "__orig_bases__", ()):
                origin = get_origin(orig_base)
                if origin is None:
                    continue
                try:
                    if not issubclass(origin, ClassMigrator):
                        continue
                except TypeError:
                    continue
                args = get_args(orig_base)
                if len(args) == 2 and all(isinstance(a, type) and a is not Any for a in args):
                    return cast(tuple[type, type], args)
        return None


class _CallableMigrator(ClassMigrator[Any, Any]):
    """Adapts a plain function (or any object with ``migrate``) to ClassMigrator."""

    def __init__(
        self,
        func: Callable[[Any], Any],
        validator: Callable[[Any], Any] | None = None,
    ) -> None:
        self._func = func
        self._validator = validator

    def migrate(self, old: Any) -> Any:
        return self._func(old)

    def validate(self, migrated: Any) -> None:
        if self._validator is not None:
            self._validator(migrated)

    def __repr__(self) -> str:
        return f"_CallableMigrator({self._func!r})"


def infer_capability(source: type, target: type) -> type:
    """
    Find the type old and new instances are both usable as.

    This is the first class in the source's MRO (after the source itself)
    that the target also derives from, ignoring ``object`` and standard
    library classes. When the target subclasses the source directly, the
    source is the capability.

    Raises:
        PlanError: If the classes share no such base
    """
    for base in source.__mro__[1:]:
        if base is object or is_runtime_owned(base):
            continue
        if issubclass(target, base):
            return base
    if issubclass(target, source):
        return source
    raise PlanError(
        "Cannot determine common capability between "
        f"{source.__qualname__} and {target.__qualname__}",
        source_type=source,
        target_type=target,
    )


@dataclass(frozen=True)
class MigratorDescriptor:
    """
    A converter bound to its source, target and capability types.

    Attributes:
        source: Class whose live instances are replaced.
        target: Class of the replacements.
        converter: The ClassMigrator doing the conversion.
        capability: Base type shared by source and target; fields typed with
            it are candidates for retargeting.
    """

    source: type
    target: type
    converter: ClassMigrator[Any, Any]
    capability: type

    @classmethod
    def of(
        cls,
        migrator: Any,
        *,
        source: type | None = None,
        target: type | None = None,
        capability: type | None = None,
    ) -> MigratorDescriptor:
        """
        Build a descriptor from a migrator class, instance or function.

        Args:
            migrator: A ClassMigrator subclass (instantiated without
                arguments), a ClassMigrator instance, an object with a
                ``migrate`` method, or a one-argument callable
            source: Source class; inferred from the generic parameters
                when omitted
            target: Target class; inferred like ``source``
            capability: Shared capability type; inferred when omitted

        Raises:
            PlanError: If the migrator cannot be instantiated or its types
                cannot be determined
        """
        if isinstance(migrator, MigratorDescriptor):
            return migrator
        if isinstance(migrator, type):
            if not issubclass(migrator, ClassMigrator):
                raise PlanError(f"Migrator must subclass ClassMigrator[Old, New]: {migrator.__qualname__}")
            try:
                converter: ClassMigrator[Any, Any] = migrator()
            except Exception as e:
                raise PlanError(f"Cannot instantiate migrator: {migrator.__qualname__}: {e}") from e
        elif isinstance(migrator, ClassMigrator):
            converter = migrator
        elif callable(getattr(migrator, "migrate", None)):
            converter = _CallableMigrator(migrator.migrate, getattr(migrator, "validate", None))
        elif callable(migrator):
            converter = _CallableMigrator(migrator)
        else:
            raise PlanError(f"Not a migrator: {migrator!r}")

        if source is None or target is None:
            inferred = type(converter).migration_types()
            if inferred is None:
                raise PlanError(
                    f"Cannot infer source and target types of {converter!r}; "
                    "subclass ClassMigrator[Old, New] or pass source= and target="
                )
            source = source or inferred[0]
            target = target or inferred[1]

        if capability is None:
            capability = infer_capability(source, target)
        return cls(source=source, target=target, converter=converter, capability=capability)

    def convert(self, old: Any) -> Any:
        """Run the converter on one instance."""
        return self.converter.migrate(old)

    def validate(self, migrated: Any) -> None:
        """Run the converter's optional validation hook."""
        validate = getattr(self.converter, "validate", None)
        if validate is not None:
            validate(migrated)

    def __repr__(self) -> str:
        return (
            f"MigratorDescriptor({self.source.__qualname__} -> {self.target.__qualname__}, "
            f"capability={self.capability.__qualname__})"
        )


class MigrationPlan:
    """
    Validated, ordered, immutable set of migrator descriptors.

    Build with ``MigrationPlan.build``; the constructor is internal.
    """

    def __init__(
        self,
        by_source: dict[type, MigratorDescriptor],
        ordered: tuple[MigratorDescriptor, ...],
    ) -> None:
        self._by_source = MappingProxyType(dict(by_source))
        self._ordered = ordered

    @classmethod
    def build(cls, descriptors: Iterable[Any]) -> MigrationPlan:
        """
        Validate descriptors and order them.

        Anything ``MigratorDescriptor.of`` accepts may be passed instead of
        a descriptor.

        Raises:
            PlanError: On a duplicate source class, two descriptors with the
                same target, a capability that is not a base of both sides,
                or a migration cycle
        """
        by_source: dict[type, MigratorDescriptor] = {}
        source_by_target: dict[type, type] = {}

        for item in descriptors:
            descriptor = MigratorDescriptor.of(item)
            source, target = descriptor.source, descriptor.target
            if source in by_source:
                raise PlanError(f"Duplicate migrator for source class: {source.__qualname__}", source_type=source)
            if target in source_by_target:
                raise PlanError(
                    f"Multiple migrators target the same class: {target.__qualname__}",
                    target_type=target,
                )
            _check_capability(descriptor)
            by_source[source] = descriptor
            source_by_target[target] = source

        edges = {s: d.target for s, d in by_source.items()}
        _detect_cycles(edges)
        ordered = _topological_order(by_source, edges)
        logger.debug("Built migration plan with %d migrators", len(ordered))
        return cls(by_source, ordered)

    @classmethod
    def empty(cls) -> MigrationPlan:
        return cls({}, ())

    def has_migration(self, cls: type) -> bool:
        return cls in self._by_source

    def migrator_for(self, cls: type) -> MigratorDescriptor | None:
        return self._by_source.get(cls)

    def target_of(self, cls: type) -> type | None:
        descriptor = self._by_source.get(cls)
        return descriptor.target if descriptor is not None else None

    @property
    def ordered_migrators(self) -> tuple[MigratorDescriptor, ...]:
        return self._ordered

    @property
    def source_types(self) -> tuple[type, ...]:
        return tuple(d.source for d in self._ordered)

    @property
    def target_types(self) -> tuple[type, ...]:
        return tuple(d.target for d in self._ordered)

    def capability_types(self) -> set[type]:
        """
        Types whose generic containers may hold migrated objects.

        Each source class and its direct bases, each descriptor's
        capability, and each target's direct bases; ``object`` excluded.
        """
        types: set[type] = set()
        for d in self._ordered:
            types.add(d.source)
            types.add(d.capability)
            types.update(d.source.__bases__)
            types.update(d.target.__bases__)
        types.discard(object)
        return types

    def __len__(self) -> int:
        return len(self._ordered)

    def __iter__(self) -> Iterator[MigratorDescriptor]:
        return iter(self._ordered)

    def __bool__(self) -> bool:
        return bool(self._ordered)

    def __repr__(self) -> str:
        return f"MigrationPlan({list(self._ordered)!r})"


def _check_capability(descriptor: MigratorDescriptor) -> None:
    capability = descriptor.capability
    if not issubclass(descriptor.source, capability):
        raise PlanError(
            f"Source does not implement capability {capability.__qualname__}: {descriptor.source.__qualname__}",
            source_type=descriptor.source,
        )
    if not issubclass(descriptor.target, capability):
        raise PlanError(
            f"Target does not implement capability {capability.__qualname__}: {descriptor.target.__qualname__}",
            target_type=descriptor.target,
        )


def _detect_cycles(edges: dict[type, type]) -> None:
    done: set[type] = set()
    for start in edges:
        path: set[type] = set()
        node: type | None = start
        while node is not None and node in edges and node not in done:
            if node in path:
                raise PlanError(f"Migration cycle detected starting at {start.__qualname__}", source_type=start)
            path.add(node)
            node = edges[node]
        done.update(path)


def _topological_order(
    by_source: dict[type, MigratorDescriptor],
    edges: dict[type, type],
) -> tuple[MigratorDescriptor, ...]:
    # a migrator whose target is itself migrated runs after that target's migrator
    result: list[MigratorDescriptor] = []
    placed: set[type] = set()
    for start in by_source:
        chain: list[type] = []
        node: type | None = start
        while node is not None and node in by_source and node not in placed:
            chain.append(node)
            placed.add(node)
            node = edges.get(node)
        result.extend(by_source[n] for n in reversed(chain))
    return tuple(result)


__all__ = [
    "ClassMigrator",
    "MigratorDescriptor",
    "MigrationPlan",
    "infer_capability",
]
