"""
Migration configuration.

MigrationConfig holds the tunables of the engine: heap walk mode, the time
bound of each bounded step, memory guards, history size and alert level.
``load_config`` reads them from a ``migration.properties`` or
``migration.yml`` file, with environment variables taking precedence.

File keys and their environment variables:

    migration.heap.walk.mode          LIVEMIGRATE_HEAP_WALK_MODE        FULL | FILTERED
    migration.timeout.heap.walk       LIVEMIGRATE_TIMEOUT_HEAP_WALK     seconds, 0 = none
    migration.timeout.heap.snapshot   LIVEMIGRATE_TIMEOUT_HEAP_SNAPSHOT seconds, 0 = none
    migration.timeout.critical.phase  LIVEMIGRATE_TIMEOUT_CRITICAL_PHASE seconds, 0 = none
    migration.timeout.smoke.test      LIVEMIGRATE_TIMEOUT_SMOKE_TEST    seconds, 0 = none
    migration.timeout.migration       LIVEMIGRATE_TIMEOUT_MIGRATION     seconds, 0 = none
    migration.heap.size.min           LIVEMIGRATE_HEAP_SIZE_MIN         megabytes, 0 = unset
    migration.heap.size.max           LIVEMIGRATE_HEAP_SIZE_MAX         megabytes, 0 = unset
    migration.history.size            LIVEMIGRATE_HISTORY_SIZE          positive integer
    migration.alert.level             LIVEMIGRATE_ALERT_LEVEL           DEBUG | WARNING | ERROR

Example:
    >>> config = load_config("deploy/migration.yml")
    >>> engine = MigrationEngine(plan, heap_walker=GcHeapWalker(), config=config)
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError, ValidationInfo, ValidatorFunctionWrapHandler, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from livemigrate.alerts import AlertLevel
from livemigrate.exceptions import ConfigurationError, HeapSizeError
from livemigrate.metrics import MemoryMetrics

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILES = ("migration.properties", "migration.yml", "migration.yaml")


class HeapWalkMode(Enum):
    """
    How the second pass finds objects to patch.
    """

    FULL = "FULL"
    """Patch every live object the heap walker reports."""

    FILTERED = "FILTERED"
    """Patch only instances of the classes related to the migration."""


@dataclass(frozen=True)
class MigrationTimeoutConfig:
    """
    Time bounds of the engine's bounded steps, in seconds.

    A value of 0 (or less) disables the bound.

    Attributes:
        heap_walk: Walking the live object set in the second pass.
        heap_snapshot: Snapshotting the instances of one source class.
        critical_phase: Each critical-phase signal call.
        smoke_test: The whole smoke test run.
    """

    heap_walk: float = 0.0
    heap_snapshot: float = 0.0
    critical_phase: float = 0.0
    smoke_test: float = 0.0

    @classmethod
    def all_timeouts(cls, seconds: float) -> MigrationTimeoutConfig:
        """Use the same bound for every step."""
        value = seconds if seconds > 0 else 0.0
        return cls(heap_walk=value, heap_snapshot=value, critical_phase=value, smoke_test=value)

    @staticmethod
    def is_enabled(value: float | None) -> bool:
        return value is not None and value > 0


@dataclass(frozen=True)
class MigrationConfig:
    """
    Engine configuration.

    Attributes:
        heap_walk_mode: FULL or FILTERED second pass (default FULL)
        heap_walk_timeout: Bound on the second-pass walk, seconds
        heap_snapshot_timeout: Bound on each source snapshot, seconds
        critical_phase_timeout: Bound on each critical-phase signal, seconds
        smoke_test_timeout: Bound on the smoke test run, seconds
        migration_timeout: Bound on the whole attempt, seconds
        min_heap_size_mb: Refuse to migrate below this memory use (0 = unset)
        max_heap_size_mb: Refuse to migrate above this memory use (0 = unset)
        history_size: Finished attempts kept in the state (default 10)
        alert_level: Minimum level of alert lines written (default WARNING)

    Raises:
        ConfigurationError: If a value is out of range
    """

    heap_walk_mode: HeapWalkMode = HeapWalkMode.FULL
    heap_walk_timeout: float = 0.0
    heap_snapshot_timeout: float = 0.0
    critical_phase_timeout: float = 0.0
    smoke_test_timeout: float = 0.0
    migration_timeout: float = 0.0
    min_heap_size_mb: float = 0.0
    max_heap_size_mb: float = 0.0
    history_size: int = 10
    alert_level: AlertLevel = AlertLevel.WARNING

    def __post_init__(self) -> None:
        """Validate ranges."""
        if self.history_size <= 0:
            raise ConfigurationError(f"history_size must be positive: {self.history_size}")
        if self.min_heap_size_mb < 0 or self.max_heap_size_mb < 0:
            raise ConfigurationError("Heap size bounds must not be negative")
        if 0 < self.max_heap_size_mb < self.min_heap_size_mb:
            raise ConfigurationError(
                f"max_heap_size_mb ({self.max_heap_size_mb}) is below "
                f"min_heap_size_mb ({self.min_heap_size_mb})"
            )

    @property
    def is_full_heap_walk(self) -> bool:
        return self.heap_walk_mode is HeapWalkMode.FULL

    @property
    def timeouts(self) -> MigrationTimeoutConfig:
        return MigrationTimeoutConfig(
            heap_walk=max(self.heap_walk_timeout, 0.0),
            heap_snapshot=max(self.heap_snapshot_timeout, 0.0),
            critical_phase=max(self.critical_phase_timeout, 0.0),
            smoke_test=max(self.smoke_test_timeout, 0.0),
        )

    def with_all_timeouts(self, seconds: float) -> MigrationConfig:
        """Return a copy using ``seconds`` for every step bound."""
        value = seconds if seconds > 0 else 0.0
        return replace(
            self,
            heap_walk_timeout=value,
            heap_snapshot_timeout=value,
            critical_phase_timeout=value,
            smoke_test_timeout=value,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "heap_walk_mode": self.heap_walk_mode.value,
            "heap_walk_timeout": self.heap_walk_timeout,
            "heap_snapshot_timeout": self.heap_snapshot_timeout,
            "critical_phase_timeout": self.critical_phase_timeout,
            "smoke_test_timeout": self.smoke_test_timeout,
            "migration_timeout": self.migration_timeout,
            "min_heap_size_mb": self.min_heap_size_mb,
            "max_heap_size_mb": self.max_heap_size_mb,
            "history_size": self.history_size,
            "alert_level": self.alert_level.value,
        }


# =============================================================================
# Loading
# =============================================================================


class MigrationSettings(BaseSettings):
    """
    Configuration sources merged by ``load_config``.

    Values come from ``LIVEMIGRATE_*`` environment variables first and from
    the configuration file (passed as init values) second. A value that does
    not validate is logged and replaced by the field default.
    """

    model_config = SettingsConfigDict(env_prefix="LIVEMIGRATE_", extra="ignore")

    heap_walk_mode: HeapWalkMode = HeapWalkMode.FULL
    timeout_heap_walk: float = 0.0
    timeout_heap_snapshot: float = 0.0
    timeout_critical_phase: float = 0.0
    timeout_smoke_test: float = 0.0
    timeout_migration: float = 0.0
    heap_size_min: float = Field(default=0.0, ge=0)
    heap_size_max: float = Field(default=0.0, ge=0)
    history_size: int = Field(default=10, gt=0)
    alert_level: AlertLevel = AlertLevel.WARNING

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, init_settings

    @field_validator("heap_walk_mode", "alert_level", mode="before")
    @classmethod
    def _enum_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator(
        "timeout_heap_walk",
        "timeout_heap_snapshot",
        "timeout_critical_phase",
        "timeout_smoke_test",
        "timeout_migration",
    )
    @classmethod
    def _disable_negative_timeout(cls, value: float) -> float:
        return value if value > 0 else 0.0

    @field_validator("*", mode="wrap")
    @classmethod
    def _ignore_invalid(cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo) -> Any:
        try:
            return handler(value)
        except ValidationError as e:
            field_name = info.field_name or ""
            logger.warning(
                "Ignoring invalid value for %s: %r (%s)",
                env_var_name(field_name),
                value,
                e.errors()[0]["msg"],
            )
            return cls.model_fields[field_name].default

    def to_config(self) -> MigrationConfig:
        """Build the engine configuration; inconsistent heap bounds are dropped."""
        kwargs: dict[str, Any] = {
            "heap_walk_mode": self.heap_walk_mode,
            "heap_walk_timeout": self.timeout_heap_walk,
            "heap_snapshot_timeout": self.timeout_heap_snapshot,
            "critical_phase_timeout": self.timeout_critical_phase,
            "smoke_test_timeout": self.timeout_smoke_test,
            "migration_timeout": self.timeout_migration,
            "min_heap_size_mb": self.heap_size_min,
            "max_heap_size_mb": self.heap_size_max,
            "history_size": self.history_size,
            "alert_level": self.alert_level,
        }
        try:
            return MigrationConfig(**kwargs)
        except ConfigurationError as e:
            logger.warning("Ignoring heap size bounds: %s", e)
            kwargs.pop("min_heap_size_mb")
            kwargs.pop("max_heap_size_mb")
            return MigrationConfig(**kwargs)


# file key -> MigrationSettings field
_KEYS: dict[str, str] = {
    "migration.heap.walk.mode": "heap_walk_mode",
    "migration.timeout.heap.walk": "timeout_heap_walk",
    "migration.timeout.heap.snapshot": "timeout_heap_snapshot",
    "migration.timeout.critical.phase": "timeout_critical_phase",
    "migration.timeout.smoke.test": "timeout_smoke_test",
    "migration.timeout.migration": "timeout_migration",
    "migration.heap.size.min": "heap_size_min",
    "migration.heap.size.max": "heap_size_max",
    "migration.history.size": "history_size",
    "migration.alert.level": "alert_level",
}


def env_var_name(key: str) -> str:
    """
    Environment variable overriding a file key or a MigrationSettings field.

    Example:
        >>> env_var_name("migration.timeout.heap.walk")
        'LIVEMIGRATE_TIMEOUT_HEAP_WALK'
    """
    field_name = _KEYS.get(key, key)
    return f"{MigrationSettings.model_config['env_prefix']}{field_name}".upper()


def _flatten(prefix: str, data: Mapping[Any, Any], out: dict[str, str]) -> None:
    for name, value in data.items():
        key = f"{prefix}.{name}" if prefix else str(name)
        if isinstance(value, Mapping):
            _flatten(key, value, out)
        elif value is not None:
            out[key] = str(value)


def read_properties(text: str) -> dict[str, str]:
    """Parse ``key=value`` (or ``key: value``) lines; ``#`` and ``!`` start comments."""
    values: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line[0] in "#!":
            continue
        separators = [i for i in (line.find("="), line.find(":")) if i >= 0]
        if not separators:
            values[line] = ""
            continue
        index = min(separators)
        values[line[:index].strip()] = line[index + 1 :].strip()
    return values


def read_yaml(text: str) -> dict[str, str]:
    """Parse a YAML document and flatten nested keys with dots."""
    data = yaml.safe_load(text) or {}
    if not isinstance(data, Mapping):
        raise ConfigurationError("Configuration YAML must be a mapping at the top level")
    values: dict[str, str] = {}
    _flatten("", data, values)
    return values


def _find_default_file() -> Path | None:
    for name in DEFAULT_CONFIG_FILES:
        candidate = Path(name)
        if candidate.is_file():
            return candidate
    return None


def read_config_file(path: str | os.PathLike[str]) -> dict[str, str]:
    """
    Read a ``.properties``, ``.yml`` or ``.yaml`` file into MigrationSettings fields.

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read {source}: {e}") from e
    try:
        values = read_yaml(text) if source.suffix in (".yml", ".yaml") else read_properties(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {source}: {e}") from e
    logger.info("Loaded migration config from %s", source)
    return {_KEYS[key]: value for key, value in values.items() if key in _KEYS}


def load_config(path: str | os.PathLike[str] | None = None) -> MigrationConfig:
    """
    Load configuration from a file and the environment.

    Args:
        path: A ``.properties``, ``.yml`` or ``.yaml`` file. When None,
            ``migration.properties`` then ``migration.yml``/``.yaml`` are
            looked up in the working directory; when none exists only the
            environment is read

    Returns:
        The resulting MigrationConfig; unset keys keep their defaults and
        ``LIVEMIGRATE_*`` environment variables win over the file

    Raises:
        ConfigurationError: If an explicitly given file cannot be read or
            parsed
    """
    source = Path(path) if path is not None else _find_default_file()
    values = read_config_file(source) if source is not None else {}
    return MigrationSettings(**values).to_config()


def current_memory_mb() -> float:
    """Process memory in megabytes, as measured for migration metrics."""
    return MemoryMetrics.capture().used_bytes / (1024 * 1024)


def validate_heap_size(config: MigrationConfig, current_mb: float | None = None) -> float:
    """
    Check process memory against the configured bounds.

    Args:
        config: Configuration holding the bounds
        current_mb: Memory to check; measured when None

    Returns:
        The memory that was checked, in megabytes

    Raises:
        HeapSizeError: If memory is below the minimum or above the maximum
    """
    measured = current_memory_mb() if current_mb is None else current_mb
    if config.min_heap_size_mb > 0 and measured < config.min_heap_size_mb:
        raise HeapSizeError(
            f"Memory use {measured:.1f} MB is below the configured minimum of {config.min_heap_size_mb} MB",
            current_mb=measured,
            limit_mb=config.min_heap_size_mb,
        )
    if config.max_heap_size_mb > 0 and measured > config.max_heap_size_mb:
        raise HeapSizeError(
            f"Memory use {measured:.1f} MB exceeds the configured maximum of {config.max_heap_size_mb} MB",
            current_mb=measured,
            limit_mb=config.max_heap_size_mb,
        )
    return measured


__all__ = [
    "DEFAULT_CONFIG_FILES",
    "HeapWalkMode",
    "MigrationTimeoutConfig",
    "MigrationConfig",
    "MigrationSettings",
    "env_var_name",
    "read_config_file",
    "read_properties",
    "read_yaml",
    "load_config",
    "current_memory_mb",
    "validate_heap_size",
]
