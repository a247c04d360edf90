"""
Typed dispatch from task kind to sync adapter.

An adapter is any awaitable callable taking the validated config and a
progress callback and returning a result mapping with at least
``records_processed``.
"""

from typing import Any, Awaitable, Callable, Iterator, Optional

from portalsync.core.exceptions import UnknownTaskKindError
from portalsync.tasks.configs import TaskConfig
from portalsync.tasks.constants import TaskKind
from portalsync.tasks.tracker import ProgressCallback


SyncAdapter = Callable[[TaskConfig, ProgressCallback], Awaitable[dict[str, Any]]]


class AdapterRegistry:
    """Maps each TaskKind to the adapter that executes it."""

    def __init__(self, adapters: Optional[dict[TaskKind, SyncAdapter]] = None) -> None:
        self._adapters: dict[TaskKind, SyncAdapter] = dict(adapters or {})

    def register(self, kind: TaskKind, adapter: SyncAdapter) -> None:
        """Register or replace the adapter for a kind."""
        self._adapters[kind] = adapter

    def resolve(self, task_type: str) -> tuple[TaskKind, SyncAdapter]:
        """
        Look up the kind and adapter for a stored task type.

        Raises:
            UnknownTaskKindError: If the type is not a known kind or has
                no adapter registered
        """
        try:
            kind = TaskKind.parse(task_type)
        except ValueError:
            raise UnknownTaskKindError(task_type) from None
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise UnknownTaskKindError(task_type)
        return kind, adapter

    def __contains__(self, kind: object) -> bool:
        return kind in self._adapters

    def __iter__(self) -> Iterator[TaskKind]:
        return iter(self._adapters)

    def kinds(self) -> list[TaskKind]:
        """Registered kinds."""
        return list(self._adapters)
