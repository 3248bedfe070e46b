"""
Bounded execution of engine steps.

TimeoutExecutor runs one operation, sync or async, under an optional time
bound. Sync operations run on a worker thread so a stuck step cannot block
the event loop; when the bound expires the awaiting side gives up and the
thread is left to finish on its own.

Example:
    >>> executor = TimeoutExecutor()
    >>> snapshot = await executor.run_with_timeout(
    ...     "heap snapshot", 5.0, walker.snapshot, OldUser
    ... )
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from livemigrate.exceptions import MigrationTimeoutError
from livemigrate.observability import ATTR_MIGRATION_ID, Tracer, create_tracer

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _call(operation: Callable[..., Any], *args: Any) -> Any:
    if inspect.iscoroutinefunction(operation):
        return await operation(*args)
    result = operation(*args)
    if inspect.isawaitable(result):
        return await result
    return result


async def _call_in_thread(operation: Callable[..., Any], *args: Any) -> Any:
    if inspect.iscoroutinefunction(operation):
        return await operation(*args)
    result = await asyncio.to_thread(operation, *args)
    if inspect.isawaitable(result):
        return await result
    return result


class TimeoutExecutor:
    """
    Runs operations with an optional time bound.

    Args:
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to create spans (default True)
    """

    def __init__(
        self,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @staticmethod
    def is_bounded(timeout: float | None) -> bool:
        return timeout is not None and timeout > 0

    async def run_with_timeout(
        self,
        name: str,
        timeout: float | None,
        operation: Callable[..., Any],
        *args: Any,
        migration_id: int | None = None,
    ) -> Any:
        """
        Run ``operation(*args)`` within ``timeout`` seconds.

        Args:
            name: Operation name used in the timeout error
            timeout: Bound in seconds; None, 0 or negative runs the operation
                directly in the calling task with no bound
            operation: Plain callable or coroutine function
            *args: Positional arguments for the operation
            migration_id: Attempt the operation belongs to, for diagnostics

        Returns:
            Whatever the operation returns

        Raises:
            MigrationTimeoutError: If the bound expires
            Exception: Anything the operation raises, unchanged
        """
        if not self.is_bounded(timeout):
            return await _call(operation, *args)

        assert timeout is not None
        attributes: dict[str, Any] = {"livemigrate.operation": name, "livemigrate.timeout_s": timeout}
        if migration_id is not None:
            attributes[ATTR_MIGRATION_ID] = migration_id
        with self._tracer.span("livemigrate.timeout.run", attributes):
            try:
                return await asyncio.wait_for(_call_in_thread(operation, *args), timeout=timeout)
            except TimeoutError as e:
                logger.error("Operation '%s' exceeded its %.3fs bound", name, timeout)
                raise MigrationTimeoutError(name, timeout, migration_id=migration_id) from e


__all__ = ["TimeoutExecutor"]
