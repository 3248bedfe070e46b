"""
Registry updater.

After the reference patcher has rewritten the object graph, registries get a
second, targeted pass: lookup tables keyed by migrated objects, capability
typed containers handed over by the host, and fields whose generic type
parameters mention a migrated capability.

Three entry points:
- ``update_declared_registries``: fields marked with ``UpdateRegistry``
- ``update_generic_container(s)``: containers supplied by the caller
- ``update_generic_fields_in_classes``: fields found through type hints

Example:
    >>> updater = RegistryUpdater(forwarding, patcher)
    >>> updater.update_declared_registries([UserDirectory, users_module], live_objects)
    >>> updater.update_generic_container(plugin_index, Plugin)
"""

from __future__ import annotations

import inspect
import logging
import types
from collections.abc import (
    Collection,
    Iterable,
    Mapping,
    MutableMapping,
    MutableSequence,
    MutableSet,
)
from typing import Any, get_origin, get_type_hints

from livemigrate.forwarding import ForwardingTable
from livemigrate.observability import ATTR_SLOTS_PATCHED, Tracer, create_tracer
from livemigrate.patching import ReferenceGraphPatcher, is_runtime_owned
from livemigrate.patching.mutations import keys_equal
from livemigrate.registry.introspection import (
    AnnotatedField,
    annotated_fields,
    declared_registries,
    matching_capability,
    static_owner,
)
from livemigrate.registry.markers import RegistryAware, UpdateRegistry

logger = logging.getLogger(__name__)

_MISSING = object()
_MUTATING_METHODS = ("replace", "put", "remove", "__setitem__")


class RegistryUpdater:
    """
    Retargets registries and capability-typed containers.

    Args:
        forwarding: Table of old → new replacements
        patcher: Reference patcher used for deep patching; its writer is
            used for every write so rollback sees registry changes too
        tracer: Optional tracer for spans
        enable_tracing: Whether to create a tracer when none is given
    """

    def __init__(
        self,
        forwarding: ForwardingTable,
        patcher: ReferenceGraphPatcher,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._forwarding = forwarding
        self._patcher = patcher
        self._writer = patcher.writer
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def _forwarded(self, value: Any) -> Any:
        return self._forwarding.get(value, _MISSING)

    # ------------------------------------------------------------------
    # Declared registries
    # ------------------------------------------------------------------

    def update_declared_registries(
        self,
        scopes: Iterable[type | types.ModuleType],
        live_objects: Iterable[Any] = (),
    ) -> int:
        """
        Update every field marked with ``UpdateRegistry`` in the given scopes.

        Static fields (``ClassVar`` annotations and module globals) are read
        from the class or module. Instance fields are read from each live
        object that is an instance of the declaring class.

        Args:
            scopes: Classes and modules to scan
            live_objects: Objects whose instance registries should be updated

        Returns:
            Number of slots rewritten
        """
        live = list(live_objects)
        count = 0
        with self._tracer.span("livemigrate.registry.update_declared") as span:
            for scope in scopes:
                try:
                    fields = declared_registries(scope)
                except Exception as e:  # noqa: BLE001 - scanning is best effort
                    logger.warning("Cannot scan %r for registries: %s", scope, e)
                    continue
                for field in fields:
                    count += self._update_declared_field(scope, field, live)
            if span is not None:
                span.set_attribute(ATTR_SLOTS_PATCHED, count)
        return count

    def _update_declared_field(
        self,
        scope: type | types.ModuleType,
        field: AnnotatedField,
        live: list[Any],
    ) -> int:
        assert field.marker is not None
        count = 0
        if field.static:
            holder: Any = scope
            if isinstance(scope, type):
                holder = static_owner(scope, field.name)
                if holder is None:
                    return 0
            count += self._update_registry_slot(holder, field.name, field.marker, static=True)
        elif isinstance(scope, type):
            for obj in live:
                if isinstance(obj, scope):
                    count += self._update_registry_slot(obj, field.name, field.marker, static=False)
        return count

    def _update_registry_slot(self, holder: Any, name: str, marker: UpdateRegistry, *, static: bool) -> int:
        value = _read_field(holder, name, static=static)
        if value is _MISSING or value is None:
            return 0
        count = 0
        replacement = self._forwarded(value)
        if replacement is not _MISSING:
            try:
                _write_field(self._writer, holder, name, replacement, static=static)
                count += 1
                value = replacement
            except Exception as e:  # noqa: BLE001 - per-field best effort
                logger.debug("Cannot retarget registry %r.%s: %s", holder, name, e)
        else:
            count += self.patch_registry_value(value, marker)
        if isinstance(value, RegistryAware):
            try:
                value.on_registry_updated()
            except Exception as e:  # noqa: BLE001 - hook failures never abort
                logger.warning(
                    "RegistryAware.on_registry_updated failed for %r.%s: %s",
                    holder,
                    name,
                    e,
                    exc_info=True,
                )
        return count

    def patch_registry_value(self, registry: Any, marker: UpdateRegistry | None = None) -> int:
        """
        Patch one registry object according to its marker.

        Returns:
            Number of slots rewritten
        """
        marker = marker or UpdateRegistry()
        if isinstance(registry, MutableMapping):
            count = self._patch_map(registry, marker.replace_keys, marker.replace_values)
            if marker.deep:
                count += self._patcher.patch_objects(list(registry.values()))
            return count
        if isinstance(registry, (MutableSequence, MutableSet)):
            count = self._patch_collection(registry)
            if marker.deep:
                count += self._patcher.patch_objects(list(registry))
            return count
        count = 0
        if marker.deep:
            count += self._patcher.patch_object(registry)
        if marker.dynamic_ops:
            count += self._patch_dynamic_views(registry, marker)
        return count

    # ------------------------------------------------------------------
    # Maps and collections
    # ------------------------------------------------------------------

    def _patch_map(self, mapping: MutableMapping[Any, Any], replace_keys: bool, replace_values: bool) -> int:
        count = 0
        for key, value in list(mapping.items()):
            new_key = self._forwarded(key) if replace_keys else _MISSING
            new_value = self._forwarded(value) if replace_values else _MISSING
            if new_key is _MISSING and new_value is _MISSING:
                continue
            try:
                count += self._replace_entry(mapping, key, value, new_key, new_value)
            except Exception as e:  # noqa: BLE001 - fall back to rebuilding the entry
                logger.debug("Entry replace failed for %r, using fallback: %s", key, e)
                count += self._fallback_replace(mapping, key, value, new_key, new_value)
        return count

    def _replace_entry(
        self,
        mapping: MutableMapping[Any, Any],
        key: Any,
        value: Any,
        new_key: Any,
        new_value: Any,
    ) -> int:
        if new_key is _MISSING:
            return 1 if self._writer.compare_and_set_item(mapping, key, value, new_value) else 0
        put_value = value if new_value is _MISSING else new_value
        self._writer.replace_key(mapping, key, new_key, put_value)
        return 1

    def _fallback_replace(
        self,
        mapping: MutableMapping[Any, Any],
        key: Any,
        value: Any,
        new_key: Any,
        new_value: Any,
    ) -> int:
        """
        Rebuild a mapping entry from a snapshot.

        The replacement entry is written before any entry with the old key is
        dropped; when the keys are equal the write itself replaces it.
        """
        put_key = key if new_key is _MISSING else new_key
        put_value = value if new_value is _MISSING else new_value
        try:
            stale = [k for k in list(mapping.keys()) if k is key]
            self._recorded_put(mapping, put_key, put_value)
            if put_key is not key and not keys_equal(put_key, key):
                for stale_key in stale:
                    self._recorded_pop(mapping, stale_key)
            return 1
        except Exception as e:  # noqa: BLE001 - best effort
            logger.warning("Could not replace registry entry %r: %s", key, e)
            return 0

    def _recorded_put(self, mapping: MutableMapping[Any, Any], key: Any, value: Any) -> None:
        previous = mapping.get(key, _MISSING)
        mapping[key] = value

        def undo() -> None:
            if previous is _MISSING:
                mapping.pop(key, None)
            else:
                mapping[key] = previous

        recorder = self._writer.recorder
        if recorder is not None:
            recorder.record(f"registry entry {key!r}", undo)

    def _recorded_pop(self, mapping: MutableMapping[Any, Any], key: Any) -> None:
        previous = mapping.pop(key, _MISSING)
        if previous is _MISSING:
            return

        def undo() -> None:
            mapping[key] = previous

        recorder = self._writer.recorder
        if recorder is not None:
            recorder.record(f"registry entry {key!r} removal", undo)

    def _patch_collection(self, collection: MutableSequence[Any] | MutableSet[Any]) -> int:
        count = 0
        if isinstance(collection, MutableSequence):
            for index, element in enumerate(list(collection)):
                replacement = self._forwarded(element)
                if replacement is _MISSING:
                    continue
                try:
                    self._writer.set_item(collection, index, replacement)
                    count += 1
                except Exception as e:  # noqa: BLE001 - per-element best effort
                    logger.debug("Cannot replace index %d: %s", index, e)
            return count
        for element in list(collection):
            replacement = self._forwarded(element)
            if replacement is _MISSING:
                continue
            try:
                self._writer.replace_member(collection, element, replacement)
                count += 1
            except Exception as e:  # noqa: BLE001 - per-member best effort
                logger.debug("Cannot replace set member: %s", e)
        return count

    # ------------------------------------------------------------------
    # Custom registries
    # ------------------------------------------------------------------

    def _patch_dynamic_views(self, registry: Any, marker: UpdateRegistry) -> int:
        """
        Patch containers exposed by a custom registry's properties and getters.

        Only applies when the registry class has a mutating method; the
        containers it exposes are then assumed to be its live state.
        """
        cls = type(registry)
        if not any(callable(getattr(cls, name, None)) for name in _MUTATING_METHODS):
            return 0
        count = 0
        for name, member in inspect.getmembers(cls):
            if name.startswith("_"):
                continue
            view = _MISSING
            try:
                if isinstance(member, property):
                    view = getattr(registry, name)
                elif inspect.isfunction(member) and _is_container_getter(member):
                    view = getattr(registry, name)()
            except Exception as e:  # noqa: BLE001 - arbitrary user code
                logger.debug("Cannot read %s.%s: %s", cls.__name__, name, e)
                continue
            if isinstance(view, (MutableMapping, MutableSequence, MutableSet)):
                count += self.patch_registry_value(view, UpdateRegistry(
                    replace_keys=marker.replace_keys,
                    replace_values=marker.replace_values,
                    deep=marker.deep,
                ))
        return count

    # ------------------------------------------------------------------
    # Generic containers
    # ------------------------------------------------------------------

    def update_generic_container(self, container: Any, capability: type) -> int:
        """
        Replace capability-typed entries of a container with their forwards.

        Mapping keys and values, sequence elements, set members and the
        attributes of custom containers are replaced when their runtime type
        is a subclass of ``capability`` and they were migrated.

        Args:
            container: The container to update
            capability: The common base type of old and new objects

        Returns:
            Number of slots rewritten
        """
        return self._update_generic(container, capability, {})

    def update_generic_containers(self, containers: Iterable[Any], capability: type) -> int:
        """Apply ``update_generic_container`` to each container."""
        visited: dict[int, Any] = {}
        return sum(self._update_generic(c, capability, visited) for c in containers)

    def _capable(self, value: Any, capability: type) -> Any:
        if not isinstance(value, capability):
            return _MISSING
        return self._forwarded(value)

    def _update_generic(self, container: Any, capability: type, visited: dict[int, Any]) -> int:
        if container is None or id(container) in visited:
            return 0
        visited[id(container)] = container
        if isinstance(container, MutableMapping):
            return self._update_generic_map(container, capability)
        if isinstance(container, MutableSequence):
            return self._update_generic_sequence(container, capability)
        if isinstance(container, MutableSet):
            return self._update_generic_set(container, capability)
        if isinstance(container, (str, bytes, Mapping, Collection)):
            return 0
        if hasattr(container, "__dict__") and not is_runtime_owned(type(container)):
            return self._update_custom_container(container, capability, visited)
        if hasattr(container, "__iter__"):
            try:
                elements = list(container)
            except Exception as e:  # noqa: BLE001 - arbitrary iterables
                logger.debug("Cannot iterate %s: %s", type(container).__name__, e)
                return 0
            return self._patcher.patch_objects(elements)
        return 0

    def _update_generic_map(self, mapping: MutableMapping[Any, Any], capability: type) -> int:
        count = 0
        for key, value in list(mapping.items()):
            new_key = self._capable(key, capability)
            new_value = self._capable(value, capability)
            if new_key is _MISSING and new_value is _MISSING:
                continue
            try:
                count += self._replace_entry(mapping, key, value, new_key, new_value)
            except Exception as e:  # noqa: BLE001
                logger.debug("Entry replace failed for %r, using fallback: %s", key, e)
                count += self._fallback_replace(mapping, key, value, new_key, new_value)
        return count

    def _update_generic_sequence(self, seq: MutableSequence[Any], capability: type) -> int:
        count = 0
        for index, element in enumerate(list(seq)):
            replacement = self._capable(element, capability)
            if replacement is _MISSING:
                continue
            try:
                self._writer.set_item(seq, index, replacement)
                count += 1
            except Exception as e:  # noqa: BLE001
                logger.debug("Cannot replace index %d: %s", index, e)
        return count

    def _update_generic_set(self, members: MutableSet[Any], capability: type) -> int:
        count = 0
        for element in list(members):
            replacement = self._capable(element, capability)
            if replacement is _MISSING:
                continue
            try:
                self._writer.replace_member(members, element, replacement)
                count += 1
            except Exception as e:  # noqa: BLE001
                logger.debug("Cannot replace set member: %s", e)
        return count

    def _update_custom_container(self, container: Any, capability: type, visited: dict[int, Any]) -> int:
        count = 0
        namespace = vars(container)
        for name, value in list(namespace.items()):
            replacement = self._capable(value, capability)
            if replacement is not _MISSING:
                try:
                    self._writer.set_item(namespace, name, replacement)
                    count += 1
                except Exception as e:  # noqa: BLE001
                    logger.debug("Cannot replace %s.%s: %s", type(container).__name__, name, e)
            elif isinstance(value, (MutableMapping, MutableSequence, MutableSet)):
                count += self._update_generic(value, capability, visited)
        if hasattr(type(container), "__iter__"):
            try:
                elements = list(container)
            except Exception as e:  # noqa: BLE001 - arbitrary iterables
                logger.debug("Cannot iterate %s: %s", type(container).__name__, e)
                return count
            count += self._patcher.patch_objects(elements)
        return count

    # ------------------------------------------------------------------
    # Generic fields found through type hints
    # ------------------------------------------------------------------

    def update_generic_fields_in_classes(
        self,
        classes: Iterable[type],
        live_objects: Iterable[Any],
        capability_types: Iterable[type],
    ) -> int:
        """
        Update fields whose generic type arguments mention a capability type.

        For ``users: ClassVar[dict[str, User]]`` with capability ``User``, the
        class-level dict is updated; for an instance annotation the field is
        updated on every live instance of the class.

        Args:
            classes: Classes whose annotations are inspected
            live_objects: Candidate instances for instance-level fields
            capability_types: Types considered migrated capabilities

        Returns:
            Number of slots rewritten
        """
        capabilities = [c for c in capability_types if isinstance(c, type) and c is not object]
        if not capabilities:
            return 0
        live = list(live_objects)
        count = 0
        with self._tracer.span("livemigrate.registry.update_generic_fields") as span:
            for cls in classes:
                if not isinstance(cls, type) or is_runtime_owned(cls):
                    continue
                try:
                    fields = annotated_fields(cls)
                except Exception as e:  # noqa: BLE001
                    logger.debug("Cannot inspect %s: %s", cls.__qualname__, e)
                    continue
                for field in fields:
                    if get_origin(field.hint) is None:
                        continue
                    capability = matching_capability(field.hint, capabilities)
                    if capability is None:
                        continue
                    count += self._update_generic_field(cls, field, capability, live)
            if span is not None:
                span.set_attribute(ATTR_SLOTS_PATCHED, count)
        return count

    def _update_generic_field(self, cls: type, field: AnnotatedField, capability: type, live: list[Any]) -> int:
        if field.static:
            owner = static_owner(cls, field.name)
            if owner is None:
                return 0
            return self._update_generic(vars(owner).get(field.name), capability, {})
        count = 0
        for obj in live:
            if isinstance(obj, cls):
                value = _read_field(obj, field.name, static=False)
                if value is not _MISSING:
                    count += self._update_generic(value, capability, {})
        return count


def _read_field(holder: Any, name: str, *, static: bool) -> Any:
    if static:
        return vars(holder).get(name, _MISSING)
    namespace = getattr(holder, "__dict__", None)
    if isinstance(namespace, dict) and name in namespace:
        return namespace[name]
    try:
        return getattr(holder, name)
    except Exception:  # noqa: BLE001 - unset slots and failing properties read as missing
        return _MISSING


def _write_field(writer: Any, holder: Any, name: str, value: Any, *, static: bool) -> None:
    if isinstance(holder, types.ModuleType):
        writer.set_item(vars(holder), name, value)
    elif static:
        writer.set_class_attr(holder, name, value)
    else:
        namespace = getattr(holder, "__dict__", None)
        if isinstance(namespace, dict) and name in namespace:
            writer.set_item(namespace, name, value)
        else:
            writer.set_attr(holder, name, value)


def _is_container_getter(func: Any) -> bool:
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        return False
    if len(signature.parameters) != 1:
        return False
    try:
        hints = get_type_hints(func)
    except Exception:  # noqa: BLE001
        return False
    returned = hints.get("return")
    origin = get_origin(returned) or returned
    return isinstance(origin, type) and issubclass(origin, (MutableMapping, MutableSequence, MutableSet))


__all__ = ["RegistryUpdater"]
