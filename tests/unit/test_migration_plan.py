"""
Unit tests for migrators, descriptors and MigrationPlan.

Tests cover:
- Type inference from ClassMigrator generic parameters
- Descriptors from classes, instances, duck-typed objects and functions
- Capability inference
- Plan validation (duplicates, shared targets, capabilities, cycles)
- Ordering of chained migrations
- Plan queries
"""

from __future__ import annotations

import pytest

from livemigrate import (
    ClassMigrator,
    MigrationPlan,
    MigratorDescriptor,
    PlanError,
    infer_capability,
)
from tests.fixtures import (
    Greeter,
    Plugin,
    PluginV1,
    PluginV2,
    UserV1,
    UserV1ToV2,
    UserV2,
    upgrade_plugin,
)


class Shape:
    pass


class ShapeV1(Shape):
    pass


class ShapeV2(Shape):
    pass


class ShapeV3(Shape):
    pass


class Unrelated:
    pass


class Bare(ClassMigrator):
    def migrate(self, old):
        return old


class NeedsArgs(ClassMigrator[ShapeV1, ShapeV2]):
    def __init__(self, factor: int) -> None:
        self.factor = factor

    def migrate(self, old: ShapeV1) -> ShapeV2:
        return ShapeV2()


class SpecializedUserMigrator(UserV1ToV2):
    """Inherits its type parameters."""


class DuckMigrator:
    def __init__(self) -> None:
        self.validated: list = []

    def migrate(self, old: ShapeV1) -> ShapeV2:
        return ShapeV2()

    def validate(self, migrated: ShapeV2) -> None:
        self.validated.append(migrated)


def step(old):
    return old


# =============================================================================
# ClassMigrator
# =============================================================================


class TestMigrationTypes:
    """Tests for ClassMigrator.migration_types."""

    def test_parameterized(self):
        assert UserV1ToV2.migration_types() == (UserV1, UserV2)

    def test_inherited_parameters(self):
        assert SpecializedUserMigrator.migration_types() == (UserV1, UserV2)

    def test_unparameterized(self):
        assert Bare.migration_types() is None


# =============================================================================
# MigratorDescriptor
# =============================================================================


class TestMigratorDescriptor:
    """Tests for MigratorDescriptor.of."""

    def test_from_class(self):
        """A ClassMigrator subclass is instantiated and its types inferred."""
        descriptor = MigratorDescriptor.of(UserV1ToV2)

        assert descriptor.source is UserV1
        assert descriptor.target is UserV2
        assert descriptor.capability is Greeter
        assert isinstance(descriptor.converter, UserV1ToV2)

    def test_from_instance(self):
        migrator = NeedsArgs(3)
        descriptor = MigratorDescriptor.of(migrator)

        assert descriptor.converter is migrator
        assert descriptor.capability is Shape

    def test_from_function(self):
        """Functions need explicit source and target classes."""
        descriptor = MigratorDescriptor.of(upgrade_plugin, source=PluginV1, target=PluginV2)
        upgraded = descriptor.convert(PluginV1("search"))

        assert isinstance(upgraded, PluginV2)
        assert upgraded.label == "search"
        assert descriptor.capability is Plugin

    def test_function_without_types(self):
        with pytest.raises(PlanError, match="Cannot infer source and target types"):
            MigratorDescriptor.of(upgrade_plugin)

    def test_duck_typed_migrator(self):
        """Objects with migrate and validate methods are adapted."""
        duck = DuckMigrator()
        descriptor = MigratorDescriptor.of(duck, source=ShapeV1, target=ShapeV2)
        migrated = descriptor.convert(ShapeV1())
        descriptor.validate(migrated)

        assert duck.validated == [migrated]

    def test_non_migrator_class(self):
        with pytest.raises(PlanError, match="Migrator must subclass ClassMigrator"):
            MigratorDescriptor.of(Unrelated)

    def test_class_needing_arguments(self):
        with pytest.raises(PlanError, match="Cannot instantiate migrator"):
            MigratorDescriptor.of(NeedsArgs)

    def test_not_a_migrator(self):
        with pytest.raises(PlanError, match="Not a migrator"):
            MigratorDescriptor.of(42)

    def test_descriptor_passes_through(self):
        descriptor = MigratorDescriptor.of(UserV1ToV2)
        assert MigratorDescriptor.of(descriptor) is descriptor

    def test_validate_runs_converter_hook(self):
        """validate delegates to the converter's validate."""
        descriptor = MigratorDescriptor.of(UserV1ToV2)

        with pytest.raises(ValueError, match="first name lost"):
            descriptor.validate(UserV2("", "x"))

    def test_repr(self):
        assert repr(MigratorDescriptor.of(UserV1ToV2)) == (
            "MigratorDescriptor(UserV1 -> UserV2, capability=Greeter)"
        )


class TestInferCapability:
    """Tests for infer_capability."""

    def test_shared_base(self):
        assert infer_capability(ShapeV1, ShapeV2) is Shape

    def test_target_subclasses_source(self):
        assert infer_capability(Shape, ShapeV1) is Shape

    def test_no_shared_base(self):
        with pytest.raises(PlanError, match="Cannot determine common capability"):
            infer_capability(ShapeV1, Unrelated)


# =============================================================================
# MigrationPlan
# =============================================================================


class TestPlanValidation:
    """Tests for MigrationPlan.build validation."""

    def test_duplicate_source(self):
        with pytest.raises(PlanError, match="Duplicate migrator for source class"):
            MigrationPlan.build([
                MigratorDescriptor.of(step, source=ShapeV1, target=ShapeV2),
                MigratorDescriptor.of(step, source=ShapeV1, target=ShapeV3),
            ])

    def test_shared_target(self):
        with pytest.raises(PlanError, match="Multiple migrators target the same class"):
            MigrationPlan.build([
                MigratorDescriptor.of(step, source=ShapeV1, target=ShapeV3),
                MigratorDescriptor.of(step, source=ShapeV2, target=ShapeV3),
            ])

    def test_capability_not_implemented(self):
        with pytest.raises(PlanError, match="does not implement capability"):
            MigrationPlan.build([
                MigratorDescriptor.of(step, source=ShapeV1, target=ShapeV2, capability=Greeter),
            ])

    def test_cycle(self):
        with pytest.raises(PlanError, match="Migration cycle detected"):
            MigrationPlan.build([
                MigratorDescriptor.of(step, source=ShapeV1, target=ShapeV2),
                MigratorDescriptor.of(step, source=ShapeV2, target=ShapeV1),
            ])

    def test_plan_error_code(self):
        with pytest.raises(PlanError) as exc_info:
            MigrationPlan.build([Unrelated])

        assert exc_info.value.error_code == "MIGRATION_PLAN_INVALID"


class TestPlanOrdering:
    """Tests for the order migrators run in."""

    def test_chain_runs_downstream_first(self):
        """V1 -> V2 runs after V2 -> V3 so V2 objects built by it are not remigrated."""
        first = MigratorDescriptor.of(step, source=ShapeV1, target=ShapeV2)
        second = MigratorDescriptor.of(step, source=ShapeV2, target=ShapeV3)
        plan = MigrationPlan.build([first, second])

        assert plan.ordered_migrators == (second, first)

    def test_independent_keep_declaration_order(self):
        users = MigratorDescriptor.of(UserV1ToV2)
        plugins = MigratorDescriptor.of(upgrade_plugin, source=PluginV1, target=PluginV2)

        assert MigrationPlan.build([users, plugins]).ordered_migrators == (users, plugins)


class TestPlanQueries:
    """Tests for plan lookups."""

    def test_lookups(self, user_plan):
        assert user_plan.has_migration(UserV1)
        assert not user_plan.has_migration(UserV2)
        assert user_plan.target_of(UserV1) is UserV2
        assert user_plan.target_of(UserV2) is None
        assert user_plan.migrator_for(UserV1).source is UserV1
        assert user_plan.migrator_for(PluginV1) is None

    def test_type_lists(self, user_plan):
        assert user_plan.source_types == (UserV1,)
        assert user_plan.target_types == (UserV2,)

    def test_capability_types(self, user_plan):
        """Sources, their bases and capabilities are included; object is not."""
        assert user_plan.capability_types() == {UserV1, Greeter}

    def test_empty(self):
        plan = MigrationPlan.empty()

        assert len(plan) == 0
        assert not plan
        assert list(plan) == []

    def test_sequence_protocol(self, user_plan):
        assert len(user_plan) == 1
        assert user_plan
        assert [d.source for d in user_plan] == [UserV1]
