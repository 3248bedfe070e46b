"""
Unit tests for RegistryUpdater.

Tests cover:
- Declared class-level, instance-level and module-level registries
- Key and value replacement switches
- Custom registries with dynamic views and the RegistryAware hook
- Generic containers filtered by capability
- Generic fields discovered through type hints
- Undo recording of registry writes
- Entry rebuild after a failing in-place replace
"""

from __future__ import annotations

from collections.abc import MutableMapping
from typing import Annotated, ClassVar

import pytest

import tests.fixtures.domain as domain
from livemigrate import ForwardingTable, ReferenceGraphPatcher, UndoJournal
from livemigrate.registry import RegistryUpdater, UpdateRegistry
from tests.fixtures import (
    ACTIVE_USERS,
    Greeter,
    PluginHost,
    PluginV1,
    PluginV2,
    Team,
    UserIndex,
    UserService,
    UserV1,
    UserV2,
)


class Bag:
    def __init__(self, **values):
        self.__dict__.update(values)


class BrokenIndex(UserIndex):
    def on_registry_updated(self) -> None:
        raise RuntimeError("cache rebuild failed")


class KeysOnly:
    lookup: ClassVar[Annotated[dict[Greeter, Greeter], UpdateRegistry(replace_values=False)]] = {}


class FlakyMapping(MutableMapping):
    """Mapping whose first write of one kind fails; records its keys after every write."""

    def __init__(self, data, fail: str) -> None:
        self._data = dict(data)
        self._fail: str | None = fail
        self.key_sets: list[set] = []

    def _write(self, kind: str) -> None:
        if self._fail == kind:
            self._fail = None
            raise RuntimeError(f"{kind} rejected")

    def __getitem__(self, key):
        return self._data[key]

    def __setitem__(self, key, value) -> None:
        self._write("set")
        self._data[key] = value
        self.key_sets.append(set(self._data))

    def __delitem__(self, key) -> None:
        self._write("del")
        del self._data[key]
        self.key_sets.append(set(self._data))

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


@pytest.fixture
def old() -> UserV1:
    return UserV1("ada lovelace")


@pytest.fixture
def new() -> UserV2:
    return UserV2("ada", "lovelace")


@pytest.fixture
def forwarding(old, new) -> ForwardingTable:
    table = ForwardingTable()
    table.put(old, new)
    return table


@pytest.fixture
def journal() -> UndoJournal:
    return UndoJournal()


@pytest.fixture
def updater(forwarding, journal) -> RegistryUpdater:
    patcher = ReferenceGraphPatcher(forwarding, recorder=journal, enable_tracing=False)
    return RegistryUpdater(forwarding, patcher, enable_tracing=False)


# =============================================================================
# Declared registries
# =============================================================================


class TestDeclaredRegistries:
    """Tests for fields marked with UpdateRegistry."""

    def test_class_level_values(self, updater, old, new):
        """ClassVar mapping values are replaced."""
        UserService.registry["ada"] = old

        assert updater.update_declared_registries([UserService]) >= 1
        assert UserService.registry["ada"] is new

    def test_class_level_keys(self, updater, old, new):
        """ClassVar mapping keys are replaced and values kept."""
        UserService.visits[old] = 3

        updater.update_declared_registries([UserService])

        assert UserService.visits == {new: 3}

    def test_replace_values_disabled(self, updater, old, new):
        """Values stay when the marker disables value replacement."""
        KeysOnly.lookup[old] = old
        try:
            updater.update_declared_registries([KeysOnly])

            assert list(KeysOnly.lookup) == [new]
            assert KeysOnly.lookup[new] is old
        finally:
            KeysOnly.lookup.clear()

    def test_instance_level(self, forwarding, updater):
        """Instance registries are updated on every live instance."""
        plugin = PluginV1("search")
        upgraded = PluginV2("search")
        forwarding.put(plugin, upgraded)
        host = PluginHost(plugin)

        assert updater.update_declared_registries([PluginHost], [host, object()]) == 1
        assert host.plugins == [upgraded]

    def test_instance_level_without_live_objects(self, forwarding, updater):
        """Instance registries are untouched without live instances."""
        plugin = PluginV1("search")
        forwarding.put(plugin, PluginV2("search"))
        host = PluginHost(plugin)

        assert updater.update_declared_registries([PluginHost]) == 0
        assert host.plugins[0] is plugin

    def test_module_level(self, updater, old, new):
        """Module globals marked as registries are updated."""
        ACTIVE_USERS.add(old)

        assert updater.update_declared_registries([domain]) == 1
        assert ACTIVE_USERS == {new}

    def test_registry_field_itself_forwarded(self, forwarding, updater):
        """A registry field holding a migrated object is retargeted as a whole."""
        replacement = UserIndex()
        forwarding.put(UserService.index, replacement)

        assert updater.update_declared_registries([UserService]) == 1
        assert UserService.index is replacement


class TestCustomRegistries:
    """Tests for custom registry objects."""

    def test_dynamic_views_patched(self, updater, old, new):
        """Containers exposed by properties are patched when dynamic_ops is set."""
        UserService.index.put("ada", old)

        updater.update_declared_registries([UserService])

        assert UserService.index.entries["ada"] is new

    def test_registry_aware_hook_called(self, updater):
        """on_registry_updated runs after the registry is processed."""
        index = UserService.index

        updater.update_declared_registries([UserService])

        assert index.updates == 1

    def test_registry_aware_failure_ignored(self, updater, old, new):
        """A failing hook does not stop the update."""
        UserService.index = BrokenIndex()
        UserService.registry["ada"] = old

        updater.update_declared_registries([UserService])

        assert UserService.registry["ada"] is new

    def test_dynamic_views_need_mutating_method(self, updater, old):
        """Objects without mutating methods expose no dynamic views."""

        class ReadOnly:
            def __init__(self, users):
                self._users = users

            @property
            def users(self) -> list:
                return self._users

        users = [old]
        marker = UpdateRegistry(deep=False, dynamic_ops=True)

        assert updater.patch_registry_value(ReadOnly(users), marker) == 0
        assert users[0] is old


# =============================================================================
# Generic containers
# =============================================================================


class TestGenericContainers:
    """Tests for caller-supplied capability-typed containers."""

    def test_mapping(self, updater, old, new):
        """Capability-typed keys and values are replaced."""
        mapping = {"owner": old, old: "visits"}

        assert updater.update_generic_container(mapping, Greeter) == 2
        assert mapping["owner"] is new
        assert mapping[new] == "visits"

    def test_capability_filter(self, forwarding, updater):
        """Forwarded objects outside the capability are left alone."""
        plugin = PluginV1("search")
        forwarding.put(plugin, PluginV2("search"))
        plugins = [plugin]

        assert updater.update_generic_container(plugins, Greeter) == 0
        assert plugins[0] is plugin

    def test_set(self, updater, old, new):
        members = {old}

        updater.update_generic_container(members, Greeter)

        assert members == {new}

    def test_custom_container(self, updater, old, new):
        """Attributes and nested containers of custom objects are updated."""
        bag = Bag(primary=old, others=[old])

        assert updater.update_generic_container(bag, Greeter) == 2
        assert bag.primary is new
        assert bag.others[0] is new

    def test_multiple_containers_visited_once(self, updater, old):
        """A container passed twice is updated once."""
        users = [old]

        assert updater.update_generic_containers([users, users], Greeter) == 1

    def test_none_container(self, updater):
        assert updater.update_generic_container(None, Greeter) == 0


# =============================================================================
# Generic fields
# =============================================================================


class TestGenericFields:
    """Tests for fields found through type hints."""

    def test_static_and_instance_fields(self, updater, old, new):
        """ClassVar and instance fields mentioning the capability are updated."""
        Team.directory.append(old)
        team = Team(old)
        team.lookup["ada"] = old

        count = updater.update_generic_fields_in_classes([Team], [team], [Greeter])

        assert count == 3
        assert Team.directory == [new]
        assert team.members == [new]
        assert team.lookup["ada"] is new

    def test_unrelated_capability(self, updater, old):
        """Fields whose arguments do not mention the capability are skipped."""
        team = Team(old)

        assert updater.update_generic_fields_in_classes([Team], [team], [PluginV1]) == 0
        assert team.members[0] is old

    def test_object_capability_ignored(self, updater, old):
        """object is never treated as a capability."""
        assert updater.update_generic_fields_in_classes([Team], [Team(old)], [object]) == 0


# =============================================================================
# Recording
# =============================================================================


class TestRecording:
    """Tests for rollback of registry writes."""

    def test_journal_restores_registries(self, updater, journal, old):
        """Registry rewrites are reverted by the journal."""
        UserService.registry["ada"] = old
        UserService.visits[old] = 1
        ACTIVE_USERS.add(old)

        updater.update_declared_registries([UserService, domain])
        assert journal.restore_from_checkpoint() is True

        assert UserService.registry["ada"] is old
        assert UserService.visits == {old: 1}
        assert ACTIVE_USERS == {old}


# =============================================================================
# Fallback replace
# =============================================================================


class TestFallbackReplace:
    """Tests for rebuilding entries whose in-place replace failed."""

    @pytest.mark.parametrize("fail", ["set", "del"])
    def test_key_swap(self, updater, journal, old, new, fail):
        """The old or the new key is present after every write, and rollback restores the entry."""
        mapping = FlakyMapping({old: "visits"}, fail=fail)

        assert updater.patch_registry_value(mapping, UpdateRegistry(deep=False)) == 1
        assert dict(mapping) == {new: "visits"}

        assert journal.restore_from_checkpoint() is True
        assert dict(mapping) == {old: "visits"}
        assert all(old in keys or new in keys for keys in mapping.key_sets)

    def test_value_swap(self, updater, journal, old, new):
        mapping = FlakyMapping({"ada": old}, fail="set")

        assert updater.patch_registry_value(mapping, UpdateRegistry(deep=False)) == 1
        assert mapping["ada"] is new

        journal.restore_from_checkpoint()
        assert mapping["ada"] is old
        assert all("ada" in keys for keys in mapping.key_sets)
