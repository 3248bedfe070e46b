"""
Post-migration validation: health checks and smoke tests.

Health checks are zero-argument callables returning a bool. Smoke tests
receive the objects created by the migration, grouped by descriptor, and
return a SmokeTestResult. The runner never raises: every failure, falsy
return or exception becomes a failed result in the report.

Example:
    >>> runner = (
    ...     SmokeTestRunner.builder()
    ...     .add_health_check(lambda: db.ping())
    ...     .add_smoke_test(lambda created: SmokeTestResult.passed())
    ...     .build()
    ... )
    >>> report = runner.run_all(created)
    >>> report.success
    True
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from livemigrate.plan import MigratorDescriptor

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], bool]
"""Zero-argument check; True means healthy."""

CreatedObjects = Mapping["MigratorDescriptor", Sequence[Any]]
"""New objects created by a migration, grouped by descriptor."""


@dataclass(frozen=True)
class SmokeTestResult:
    """
    Outcome of one health check or smoke test.

    Attributes:
        ok: True if the check passed.
        name: Check name; the runner fills in a positional name if unset.
        message: Failure description.
        error: Exception raised by the check, if any.
    """

    ok: bool
    name: str | None = None
    message: str | None = None
    error: BaseException | None = field(default=None, compare=False)

    @classmethod
    def passed(cls, name: str | None = None) -> SmokeTestResult:
        return cls(ok=True, name=name)

    @classmethod
    def fail(
        cls,
        message: str,
        error: BaseException | None = None,
        *,
        name: str | None = None,
    ) -> SmokeTestResult:
        return cls(ok=False, name=name, message=message, error=error)

    def with_name(self, name: str) -> SmokeTestResult:
        return replace(self, name=name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "ok": self.ok,
            "message": self.message,
            "error": repr(self.error) if self.error is not None else None,
        }


SmokeTest = Callable[[CreatedObjects], "SmokeTestResult | None"]
"""Check over the created objects; returning None counts as a failure."""


@dataclass(frozen=True)
class SmokeTestReport:
    """
    Aggregated validation outcome.

    Attributes:
        success: True only when every result is ok.
        results: Health check results first, then smoke test results.
    """

    success: bool
    results: tuple[SmokeTestResult, ...] = ()

    @property
    def failures(self) -> tuple[SmokeTestResult, ...]:
        return tuple(r for r in self.results if not r.ok)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
        }


class SmokeTestRunner:
    """
    Runs health checks, then smoke tests, and builds a report.

    Args:
        health_checks: Checks named ``healthcheck#<index>`` in the report
        smoke_tests: Tests named ``smoketest#<index>`` unless they name
            their own result
    """

    def __init__(
        self,
        health_checks: Iterable[HealthCheck] = (),
        smoke_tests: Iterable[SmokeTest] = (),
    ) -> None:
        self._health_checks = list(health_checks)
        self._smoke_tests = list(smoke_tests)

    @classmethod
    def builder(cls) -> SmokeTestRunnerBuilder:
        return SmokeTestRunnerBuilder()

    @property
    def health_checks(self) -> tuple[HealthCheck, ...]:
        return tuple(self._health_checks)

    @property
    def smoke_tests(self) -> tuple[SmokeTest, ...]:
        return tuple(self._smoke_tests)

    def run_all(self, created: CreatedObjects) -> SmokeTestReport:
        """
        Run every check against the created objects.

        Args:
            created: New objects grouped by the descriptor that created them

        Returns:
            The report; never raises for a failing check
        """
        results = self._run_health_checks() + self._run_smoke_tests(created)
        report = SmokeTestReport(success=all(r.ok for r in results), results=tuple(results))
        if not report.success:
            logger.warning(
                "Smoke tests failed: %s",
                ", ".join(f"{r.name} ({r.message})" for r in report.failures),
            )
        return report

    def _run_health_checks(self) -> list[SmokeTestResult]:
        results = []
        for index, check in enumerate(self._health_checks):
            name = f"healthcheck#{index}"
            try:
                healthy = check()
            except Exception as e:
                results.append(SmokeTestResult.fail(f"threw: {e}", e, name=name))
                continue
            if healthy:
                results.append(SmokeTestResult.passed(name))
            else:
                results.append(SmokeTestResult.fail("returned false", name=name))
        return results

    def _run_smoke_tests(self, created: CreatedObjects) -> list[SmokeTestResult]:
        results = []
        for index, test in enumerate(self._smoke_tests):
            name = f"smoketest#{index}"
            try:
                result = test(created)
            except Exception as e:
                results.append(SmokeTestResult.fail(f"threw: {e}", e, name=name))
                continue
            if result is None:
                results.append(SmokeTestResult.fail("returned null result", name=name))
            elif result is False:
                results.append(SmokeTestResult.fail("returned false", name=name))
            elif result is True:
                results.append(SmokeTestResult.passed(name))
            elif result.name is None:
                results.append(result.with_name(name))
            else:
                results.append(result)
        return results


class SmokeTestRunnerBuilder:
    """Fluent construction of a SmokeTestRunner."""

    def __init__(self) -> None:
        self._health_checks: list[HealthCheck] = []
        self._smoke_tests: list[SmokeTest] = []

    def add_health_check(self, check: HealthCheck) -> SmokeTestRunnerBuilder:
        self._health_checks.append(check)
        return self

    def add_smoke_test(self, test: SmokeTest) -> SmokeTestRunnerBuilder:
        self._smoke_tests.append(test)
        return self

    def build(self) -> SmokeTestRunner:
        return SmokeTestRunner(self._health_checks, self._smoke_tests)


__all__ = [
    "HealthCheck",
    "SmokeTest",
    "SmokeTestResult",
    "SmokeTestReport",
    "SmokeTestRunner",
    "SmokeTestRunnerBuilder",
]
