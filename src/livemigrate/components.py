"""
Decorator-based discovery of migration components.

Applications mark their migrators and collaborators with decorators and
let ``MigrationEngine.from_components`` assemble the engine:

    @migrator
    class UserMigrator(ClassMigrator[UserV1, UserV2]):
        def migrate(self, old: UserV1) -> UserV2:
            return UserV2(old.name)

    @phase_listener
    class Quiesce:
        async def before_critical_phase(self, ctx): ...
        async def after_critical_phase(self, ctx): ...

    @smoke_test_component
    def users_have_names(created):
        return all(u.name for users in created.values() for u in users)

    engine = MigrationEngine.from_components(default_registry, GcHeapWalker())

Decorated classes are instantiated with no arguments when the registry is
resolved. Every decorator accepts ``registry=`` to target an isolated
registry, which is what tests should do.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar, overload

from livemigrate.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MIGRATORS = "migrators"
_PHASE_LISTENERS = "phase listener"
_COMMIT = "commit component"
_ROLLBACK = "rollback component"
_SMOKE_TESTS = "smoke tests"
_HEALTH_CHECKS = "health checks"

_SINGLETONS = (_PHASE_LISTENERS, _COMMIT, _ROLLBACK)


@dataclass(frozen=True)
class ResolvedComponents:
    """
    Instantiated components of a registry.

    Attributes:
        migrators: Migrator classes, instances or functions in registration order
        phase_listener: The critical-phase listener, if one was registered
        commit_manager: The commit component, if one was registered
        rollback_manager: The rollback component, if one was registered
        smoke_tests: Smoke tests in registration order
        health_checks: Health checks in registration order
    """

    migrators: tuple[Any, ...]
    phase_listener: Any | None = None
    commit_manager: Any | None = None
    rollback_manager: Any | None = None
    smoke_tests: tuple[Callable[..., Any], ...] = ()
    health_checks: tuple[Callable[[], bool], ...] = ()


class ComponentRegistry:
    """
    Thread-safe collection of migration components.

    Example:
        >>> registry = ComponentRegistry()
        >>> registry.register_migrator(UserMigrator)
        >>> registry.register_smoke_test(users_have_names)
        >>> components = registry.resolve()
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._components: dict[str, list[Any]] = {
            _MIGRATORS: [],
            _PHASE_LISTENERS: [],
            _COMMIT: [],
            _ROLLBACK: [],
            _SMOKE_TESTS: [],
            _HEALTH_CHECKS: [],
        }

    def _register(self, kind: str, component: T) -> T:
        with self._lock:
            if not any(existing is component for existing in self._components[kind]):
                self._components[kind].append(component)
        logger.debug("Registered %s: %s", kind, _component_name(component))
        return component

    def register_migrator(self, component: T) -> T:
        """Register a ClassMigrator subclass, instance, or converter function."""
        return self._register(_MIGRATORS, component)

    def register_phase_listener(self, component: T) -> T:
        """Register the object receiving critical-phase signals."""
        return self._register(_PHASE_LISTENERS, component)

    def register_commit_component(self, component: T) -> T:
        """Register the object whose ``commit()`` finalizes a migration."""
        return self._register(_COMMIT, component)

    def register_rollback_component(self, component: T) -> T:
        """Register the object whose ``rollback()`` restores process state."""
        return self._register(_ROLLBACK, component)

    def register_smoke_test(self, component: T) -> T:
        """Register a smoke test; it is called with the created objects."""
        return self._register(_SMOKE_TESTS, component)

    def register_health_check(self, component: T) -> T:
        """Register a health check; it is called with no arguments."""
        return self._register(_HEALTH_CHECKS, component)

    def components(self, kind: str) -> list[Any]:
        with self._lock:
            return list(self._components[kind])

    def clear(self) -> None:
        """Forget every registered component."""
        with self._lock:
            for registered in self._components.values():
                registered.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(len(registered) for registered in self._components.values())

    def resolve(self, *, require_all: bool = False) -> ResolvedComponents:
        """
        Instantiate the registered components.

        Classes registered as phase listener, commit, rollback, smoke test or
        health check components are instantiated with no arguments. Migrator
        classes are passed on as-is; the plan instantiates them.

        Args:
            require_all: Also require a phase listener, a commit component
                and a rollback component

        Returns:
            The assembled components

        Raises:
            ConfigurationError: If no migrator is registered, a singleton
                component is registered more than once, a required singleton
                is missing, or a component cannot be instantiated
        """
        with self._lock:
            snapshot = {kind: list(registered) for kind, registered in self._components.items()}

        if not snapshot[_MIGRATORS]:
            raise ConfigurationError("No migrators registered")

        singletons: dict[str, Any | None] = {}
        for kind in _SINGLETONS:
            registered = snapshot[kind]
            if len(registered) > 1:
                names = ", ".join(_component_name(c) for c in registered)
                raise ConfigurationError(f"Expected exactly one {kind}, found {len(registered)}: {names}")
            if not registered:
                if require_all:
                    raise ConfigurationError(f"No {kind} registered")
                singletons[kind] = None
                continue
            singletons[kind] = _instantiate(kind, registered[0])

        resolved = ResolvedComponents(
            migrators=tuple(snapshot[_MIGRATORS]),
            phase_listener=singletons[_PHASE_LISTENERS],
            commit_manager=singletons[_COMMIT],
            rollback_manager=singletons[_ROLLBACK],
            smoke_tests=tuple(_instantiate(_SMOKE_TESTS, c) for c in snapshot[_SMOKE_TESTS]),
            health_checks=tuple(_instantiate(_HEALTH_CHECKS, c) for c in snapshot[_HEALTH_CHECKS]),
        )
        logger.info(
            "Resolved %d migrators, %d smoke tests, %d health checks",
            len(resolved.migrators),
            len(resolved.smoke_tests),
            len(resolved.health_checks),
        )
        return resolved


def _component_name(component: Any) -> str:
    name = getattr(component, "__qualname__", None)
    return name if isinstance(name, str) else type(component).__qualname__


def _instantiate(kind: str, component: Any) -> Any:
    if not isinstance(component, type):
        return component
    try:
        return component()
    except Exception as e:
        raise ConfigurationError(f"Cannot instantiate {kind} {component.__qualname__}: {e}") from e


# Module-level default registry
default_registry = ComponentRegistry()


def _decorator(
    register: Callable[[ComponentRegistry, Any], Any],
    component: Any,
    registry: ComponentRegistry | None,
) -> Any:
    target_registry = registry if registry is not None else default_registry

    def decorator(obj: T) -> T:
        register(target_registry, obj)
        return obj

    # Handle both @migrator and @migrator()
    if component is not None:
        return decorator(component)
    return decorator


@overload
def migrator(component: T) -> T: ...


@overload
def migrator(component: None = None, *, registry: ComponentRegistry | None = None) -> Callable[[T], T]: ...


def migrator(component: Any = None, *, registry: ComponentRegistry | None = None) -> Any:
    """
    Register a migrator.

    Can be used with or without parentheses:

        @migrator
        class UserMigrator(ClassMigrator[UserV1, UserV2]):
            ...

        @migrator(registry=test_registry)
        class UserMigrator(ClassMigrator[UserV1, UserV2]):
            ...

    Args:
        component: The migrator (when used without parentheses)
        registry: Optional registry to use (defaults to the module-level registry)

    Returns:
        The migrator unchanged, or a decorator
    """
    return _decorator(ComponentRegistry.register_migrator, component, registry)


def phase_listener(component: Any = None, *, registry: ComponentRegistry | None = None) -> Any:
    """Register the critical-phase listener. Usable with or without parentheses."""
    return _decorator(ComponentRegistry.register_phase_listener, component, registry)


def commit_component(component: Any = None, *, registry: ComponentRegistry | None = None) -> Any:
    """Register the commit component. Usable with or without parentheses."""
    return _decorator(ComponentRegistry.register_commit_component, component, registry)


def rollback_component(component: Any = None, *, registry: ComponentRegistry | None = None) -> Any:
    """Register the rollback component. Usable with or without parentheses."""
    return _decorator(ComponentRegistry.register_rollback_component, component, registry)


def smoke_test_component(component: Any = None, *, registry: ComponentRegistry | None = None) -> Any:
    """Register a smoke test. Usable with or without parentheses."""
    return _decorator(ComponentRegistry.register_smoke_test, component, registry)


def health_check_component(component: Any = None, *, registry: ComponentRegistry | None = None) -> Any:
    """Register a health check. Usable with or without parentheses."""
    return _decorator(ComponentRegistry.register_health_check, component, registry)


__all__ = [
    "ComponentRegistry",
    "ResolvedComponents",
    "default_registry",
    "migrator",
    "phase_listener",
    "commit_component",
    "rollback_component",
    "smoke_test_component",
    "health_check_component",
]
