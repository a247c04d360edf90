"""
Sync context for chain runs.

A SyncContext caches externally fetched entities for the duration of one
chain run, so later steps reuse lists an earlier step already pulled
instead of calling the external API again.

The active context is published through a ``ContextVar``. Coroutines
started by the chain (including ``asyncio.gather`` children) see it;
anything outside the chain sees None. Consumers therefore always follow
the same pattern::

    ctx = current_sync_context()
    if ctx is not None:
        groups = await ctx.get_all_or_fetch("groups", client.list_groups)
    else:
        groups = await client.list_groups()
"""

import logging
import math
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Generator, Optional

from portalsync.core.constants import DEFAULT_PAGE_SIZE, SYNC_CONTEXT_TTL_MINUTES

logger = logging.getLogger(__name__)


# =============================================================================
# Statistics
# =============================================================================

@dataclass
class SyncContextStats:
    """Cache effectiveness counters."""

    hits: int = 0
    misses: int = 0
    api_calls_saved: int = 0

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups served from the cache."""
        total = self.hits + self.misses
        return round(self.hits / total, 3) if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert stats to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "api_calls_saved": self.api_calls_saved,
            "hit_rate": self.hit_rate,
        }


# =============================================================================
# Sync Context
# =============================================================================

class SyncContext:
    """
    Per-chain cache of external entities, grouped by entity type.

    Args:
        chain_id: Identifier of the owning chain run
        ttl_minutes: Lifetime after which the cache is treated as stale
        page_size: Records per external API page, used to estimate
            how many calls a cached list saved
        clock: Source of "now"
    """

    def __init__(
        self,
        chain_id: Optional[str] = None,
        ttl_minutes: int = SYNC_CONTEXT_TTL_MINUTES,
        page_size: int = DEFAULT_PAGE_SIZE,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.chain_id = chain_id or uuid.uuid4().hex[:12]
        self._clock = clock
        self._ttl = timedelta(minutes=ttl_minutes)
        self._page_size = page_size
        self.created_at = clock()
        self.expires_at = self.created_at + self._ttl
        self._closed = False

        self._entities: dict[str, dict[str, Any]] = {}
        self._complete: set[str] = set()
        self._stats = SyncContextStats()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        """Whether the owning chain has finished."""
        return self._closed

    @property
    def is_expired(self) -> bool:
        """Whether the TTL has elapsed."""
        return self._clock() >= self.expires_at

    @property
    def is_active(self) -> bool:
        """Whether the cache may be used."""
        return not self._closed and not self.is_expired

    def refresh(self) -> None:
        """Extend the TTL from now."""
        self.expires_at = self._clock() + self._ttl

    def close(self) -> None:
        """Drop all cached data. The context cannot be used afterwards."""
        if self._closed:
            return
        logger.debug(f"Closing sync context {self.chain_id}: {self._stats.to_dict()}")
        self._entities.clear()
        self._complete.clear()
        self._closed = True

    # -------------------------------------------------------------------------
    # Single Entities
    # -------------------------------------------------------------------------

    def get(self, entity: str, key: str) -> Optional[Any]:
        """Look up one cached entity."""
        value = self._entities.get(entity, {}).get(str(key)) if self.is_active else None
        if value is None:
            self._stats.misses += 1
        else:
            self._stats.hits += 1
        return value

    def set(self, entity: str, key: str, value: Any) -> None:
        """Cache one entity."""
        if not self.is_active:
            return
        self._entities.setdefault(entity, {})[str(key)] = value

    async def get_or_fetch(
        self,
        entity: str,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return a cached entity, fetching and caching it on a miss."""
        value = self.get(entity, key)
        if value is not None:
            self._stats.api_calls_saved += 1
            return value
        value = await fetch()
        if value is not None:
            self.set(entity, key, value)
        return value

    # -------------------------------------------------------------------------
    # Complete Lists
    # -------------------------------------------------------------------------

    def has_all(self, entity: str) -> bool:
        """Whether a complete list of this entity type is cached."""
        return self.is_active and entity in self._complete

    def get_all(self, entity: str) -> Optional[list[Any]]:
        """Return the complete cached list, or None if not cached."""
        if not self.has_all(entity):
            self._stats.misses += 1
            return None
        items = list(self._entities.get(entity, {}).values())
        self._stats.hits += 1
        self._stats.api_calls_saved += max(1, math.ceil(len(items) / self._page_size))
        return items

    def set_all(self, entity: str, items: list[Any], key: str = "id") -> None:
        """Cache a complete list, replacing anything cached for the type."""
        if not self.is_active:
            return
        self._entities[entity] = {
            str(item[key] if isinstance(item, dict) else getattr(item, key)): item
            for item in items
        }
        self._complete.add(entity)

    async def get_all_or_fetch(
        self,
        entity: str,
        fetch: Callable[[], Awaitable[list[Any]]],
        key: str = "id",
    ) -> list[Any]:
        """Return the complete cached list, fetching and caching it on a miss."""
        cached = self.get_all(entity)
        if cached is not None:
            logger.debug(f"Sync context {self.chain_id}: reusing {len(cached)} {entity}")
            return cached
        items = await fetch()
        self.set_all(entity, items, key=key)
        return items

    def clear(self, entity: Optional[str] = None) -> None:
        """Clear one entity type, or everything."""
        if entity is None:
            self._entities.clear()
            self._complete.clear()
            return
        self._entities.pop(entity, None)
        self._complete.discard(entity)

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Cache statistics and sizes."""
        return {
            "chain_id": self.chain_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "closed": self._closed,
            "cached": {entity: len(items) for entity, items in self._entities.items()},
            **self._stats.to_dict(),
        }


# =============================================================================
# Active Context
# =============================================================================

_current_context: ContextVar[Optional[SyncContext]] = ContextVar(
    "portalsync_sync_context", default=None
)


def current_sync_context() -> Optional[SyncContext]:
    """The active chain's context, or None outside a chain or once expired."""
    ctx = _current_context.get()
    if ctx is None or not ctx.is_active:
        return None
    return ctx


@contextmanager
def activate_sync_context(ctx: SyncContext) -> Generator[SyncContext, None, None]:
    """Publish ``ctx`` for the current task and its children, then close it."""
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)
        ctx.close()
