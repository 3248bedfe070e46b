"""
Checkpoint, commit and rollback.

The engine does not know how process state is saved or restored; it talks
to a CheckpointController. ``restore_from_checkpoint`` must return True when
the compensating actions completed. Returning False, or raising, is a
rollback failure.

Two controllers ship with the package:
- NoopCheckpointController: nothing to save, nothing to restore.
- UndoJournal: records the inverse of every write the patcher and the
  registry updater make and replays them newest-first on restore.

Example:
    >>> journal = UndoJournal()
    >>> engine = MigrationEngine(
    ...     plan,
    ...     heap_walker=walker,
    ...     recorder=journal,
    ...     commit_manager=CommitManager(journal),
    ...     rollback_manager=RollbackManager(journal),
    ... )
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any, Protocol, runtime_checkable

from livemigrate.exceptions import CommitError, RollbackError

logger = logging.getLogger(__name__)


@runtime_checkable
class CheckpointController(Protocol):
    """
    Saves and restores process state around a migration.
    """

    def delete_checkpoint(self) -> None:
        """Discard the checkpoint after a successful migration."""
        ...

    def restore_from_checkpoint(self) -> bool:
        """
        Restore the pre-migration state.

        Returns:
            True when every compensating action completed
        """
        ...


class NoopCheckpointController:
    """Controller for hosts without checkpoint support; restore always succeeds."""

    def delete_checkpoint(self) -> None:
        return None

    def restore_from_checkpoint(self) -> bool:
        return True


class UndoJournal:
    """
    Compensating-action log usable as both recorder and checkpoint controller.

    Thread-safe. Entries are replayed newest-first so overlapping writes to
    the same slot end with the oldest value.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._actions: list[tuple[str, Callable[[], None]]] = []

    def record(self, description: str, undo: Callable[[], None]) -> None:
        with self._lock:
            self._actions.append((description, undo))

    def delete_checkpoint(self) -> None:
        with self._lock:
            discarded = len(self._actions)
            self._actions.clear()
        logger.debug("Discarded %d undo entries", discarded)

    def restore_from_checkpoint(self) -> bool:
        with self._lock:
            actions = list(self._actions)
            self._actions.clear()
        succeeded = True
        for description, undo in reversed(actions):
            try:
                undo()
            except Exception as e:
                succeeded = False
                logger.error("Failed to undo %s: %s", description, e, exc_info=True)
        logger.info("Replayed %d undo entries (success=%s)", len(actions), succeeded)
        return succeeded

    def internal_containers(self) -> Iterator[Any]:
        """Yield the journal's own storage so the patcher leaves it alone."""
        with self._lock:
            actions = list(self._actions)
        yield self
        yield self._actions
        for entry in actions:
            yield entry
            undo = entry[1]
            yield undo
            # closure cells hold the values to restore
            yield from getattr(undo, "__closure__", None) or ()

    def __len__(self) -> int:
        return len(self._actions)


class CommitManager:
    """
    Finalizes a successful migration.

    Args:
        controller: Checkpoint controller whose checkpoint is deleted
        listener: Optional callback run after the checkpoint is gone;
            failures are logged and ignored
    """

    def __init__(
        self,
        controller: CheckpointController,
        listener: Callable[[], Any] | None = None,
    ) -> None:
        self._controller = controller
        self._listener = listener

    @property
    def controller(self) -> CheckpointController:
        return self._controller

    def commit(self) -> None:
        """
        Delete the checkpoint and notify the listener.

        Raises:
            CommitError: If the controller fails to delete the checkpoint
        """
        try:
            self._controller.delete_checkpoint()
        except Exception as e:
            raise CommitError("Failed to delete checkpoint", finalization_cause=e) from e
        if self._listener is not None:
            try:
                self._listener()
            except Exception as e:
                logger.warning("Commit listener failed: %s", e, exc_info=True)


class RollbackManager:
    """
    Restores the pre-migration state through a checkpoint controller.
    """

    def __init__(self, controller: CheckpointController) -> None:
        self._controller = controller

    @property
    def controller(self) -> CheckpointController:
        return self._controller

    def rollback(self) -> None:
        """
        Restore from the checkpoint.

        Raises:
            RollbackError: If the controller raises or reports failure
        """
        try:
            restored = self._controller.restore_from_checkpoint()
        except Exception as e:
            raise RollbackError("Failed to restore from checkpoint", finalization_cause=e) from e
        if not restored:
            raise RollbackError("Checkpoint restore reported failure")


__all__ = [
    "CheckpointController",
    "NoopCheckpointController",
    "UndoJournal",
    "CommitManager",
    "RollbackManager",
]
