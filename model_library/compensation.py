"""
Rollback and after-commit bookkeeping for multi-system writes.

The object store has no transactions. Each successful write pushes an undo
onto a :class:`CompensationStack`; a later failure unwinds it in reverse.
:class:`PostCommitHooks` hold best-effort work that must never fail the
already-committed operation.
"""

import logging
from typing import Callable

from .errors import ObjectNotFound
from .storage import ObjectStore

logger = logging.getLogger(__name__)


class CompensationStack:
    """
    Undo callables, run last-in first-out.

    Usage:
        undo = CompensationStack()
        store.upload(key, data)
        undo.push_delete(store, key)
        ...
        except Exception:
            undo.unwind()
            raise
    """

    def __init__(self) -> None:
        self._actions: list[tuple[str, Callable[[], None]]] = []

    def __len__(self) -> int:
        return len(self._actions)

    def push(self, description: str, action: Callable[[], None]) -> None:
        self._actions.append((description, action))

    def push_delete(self, store: ObjectStore, key: str) -> None:
        def _delete() -> None:
            try:
                store.delete(key)
            except ObjectNotFound:
                pass

        self.push(f"delete {key}", _delete)

    def unwind(self) -> list[str]:
        """Run every undo in reverse. Returns descriptions of the ones that failed."""
        failed: list[str] = []
        while self._actions:
            description, action = self._actions.pop()
            try:
                action()
            except Exception as e:
                logger.warning("Rollback step failed (%s): %s", description, e)
                failed.append(description)
        if failed:
            logger.warning("%d rollback step(s) left orphaned objects", len(failed))
        return failed

    def discard(self) -> None:
        """Forget the undo log once the operation has committed."""
        self._actions.clear()


class PostCommitHooks:
    """Callables run after commit; errors are collected, never raised.

    A hook reports a soft failure by returning a message, a hard one by raising.
    """

    def __init__(self) -> None:
        self._hooks: list[tuple[str, Callable[[], str | None]]] = []

    def __len__(self) -> int:
        return len(self._hooks)

    def add(self, description: str, hook: Callable[[], str | None]) -> None:
        self._hooks.append((description, hook))

    def run(self) -> list[str]:
        errors: list[str] = []
        for description, hook in self._hooks:
            try:
                message = hook()
            except Exception as e:
                message = str(e) or type(e).__name__
            if message:
                logger.warning("Post-commit step failed (%s): %s", description, message)
                errors.append(f"{description}: {message}")
        self._hooks.clear()
        return errors
