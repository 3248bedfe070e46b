"""
Registry declarations.

A registry is any class-level, module-level or instance-level field holding
a container (or a custom registry object) whose contents must be retargeted
after a migration. Registries are declared with ``typing.Annotated``:

Example:
    >>> from typing import Annotated, ClassVar
    >>> from livemigrate.registry import UpdateRegistry
    >>>
    >>> class UserDirectory:
    ...     by_name: ClassVar[Annotated[dict[str, User], UpdateRegistry()]] = {}
    ...     sessions: Annotated[list[Session], UpdateRegistry(deep=False)]
    >>>
    >>> # module level
    >>> ACTIVE: Annotated[set[User], UpdateRegistry()] = set()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class UpdateRegistry:
    """
    Marks a field as a registry the engine must update after migration.

    Attributes:
        replace_keys: Replace mapping keys that were migrated.
        replace_values: Replace mapping values that were migrated.
        deep: Walk the registry's contents with the reference patcher.
        dynamic_ops: For custom registry objects that expose mutating
            methods, also read and patch every property or zero-argument
            method annotated to return a container.
    """

    replace_keys: bool = True
    replace_values: bool = True
    deep: bool = True
    dynamic_ops: bool = False


@runtime_checkable
class RegistryAware(Protocol):
    """
    Optional hook for registries that cache derived state.

    ``on_registry_updated`` is called after the registry's contents were
    retargeted. Failures are logged and ignored.
    """

    def on_registry_updated(self) -> None: ...


__all__ = ["UpdateRegistry", "RegistryAware"]
