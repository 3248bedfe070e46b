"""
Shared test fixtures for the livemigrate library.

This module provides the test domain:
- Old/new class pairs sharing a capability (UserV1/UserV2, PluginV1/PluginV2)
- Their migrators (UserV1ToV2, upgrade_plugin)
- Holders referencing them through attributes, slots, frozen dataclasses,
  declared registries and generic fields

Usage:
    from tests.fixtures import (
        UserV1,
        UserV2,
        UserV1ToV2,
        UserService,
        reset_state,
    )
"""

from tests.fixtures.domain import (
    ACTIVE_USERS,
    AuditRecord,
    Greeter,
    Plugin,
    PluginHost,
    PluginV1,
    PluginV2,
    Session,
    Team,
    UserIndex,
    UserService,
    UserV1,
    UserV1ToV2,
    UserV2,
    reset_state,
    upgrade_plugin,
)
from tests.fixtures.otel import collected_metrics

__all__ = [
    # Users
    "Greeter",
    "UserV1",
    "UserV2",
    "UserV1ToV2",
    # Plugins
    "Plugin",
    "PluginV1",
    "PluginV2",
    "upgrade_plugin",
    # Holders
    "Session",
    "AuditRecord",
    "UserIndex",
    "UserService",
    "Team",
    "PluginHost",
    "ACTIVE_USERS",
    "reset_state",
    # OpenTelemetry
    "collected_metrics",
]
