"""
Registry declarations and the registry updater.

Example:
    >>> from typing import Annotated, ClassVar
    >>> from livemigrate.registry import UpdateRegistry
    >>>
    >>> class Sessions:
    ...     active: ClassVar[Annotated[dict[int, User], UpdateRegistry()]] = {}
"""

from livemigrate.registry.introspection import (
    AnnotatedField,
    annotated_fields,
    declared_registries,
    matching_capability,
    type_arguments,
)
from livemigrate.registry.markers import RegistryAware, UpdateRegistry
from livemigrate.registry.updater import RegistryUpdater

__all__ = [
    "UpdateRegistry",
    "RegistryAware",
    "RegistryUpdater",
    "AnnotatedField",
    "annotated_fields",
    "declared_registries",
    "matching_capability",
    "type_arguments",
]
