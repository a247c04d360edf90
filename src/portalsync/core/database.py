"""
Async database connection for the relational store.

Wraps a single aiosqlite connection shared by the task store and the
sync adapters. Every write is committed on its own; callers that need
several statements to land together issue them in one ``executescript``.
"""

import logging
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import aiosqlite

from portalsync.core.exceptions import StoreError

logger = logging.getLogger(__name__)


class Database:
    """Thin async wrapper over an aiosqlite connection."""

    def __init__(self, path: Path | str) -> None:
        self._path = str(path)
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def path(self) -> str:
        """Location of the database file."""
        return self._path

    @property
    def is_connected(self) -> bool:
        """Whether the connection is open."""
        return self._conn is not None

    async def connect(self) -> None:
        """Open the connection. Safe to call more than once."""
        if self._conn is not None:
            return
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA foreign_keys = ON")
        logger.debug(f"Opened database at {self._path}")

    async def close(self) -> None:
        """Close the connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.debug(f"Closed database at {self._path}")

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("Database is not connected", details={"path": self._path})
        return self._conn

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute one statement and commit. Returns the affected row count."""
        conn = self._require()
        async with conn.execute(sql, tuple(params)) as cursor:
            rowcount = cursor.rowcount
        await conn.commit()
        return rowcount

    async def insert(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute an INSERT and commit. Returns the new row id."""
        conn = self._require()
        async with conn.execute(sql, tuple(params)) as cursor:
            row_id = cursor.lastrowid
        await conn.commit()
        return int(row_id or 0)

    async def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> None:
        """Execute a statement for each parameter row and commit once."""
        conn = self._require()
        await conn.executemany(sql, [tuple(r) for r in rows])
        await conn.commit()

    async def executescript(self, script: str) -> None:
        """Run a multi-statement script (schema creation)."""
        conn = self._require()
        await conn.executescript(script)
        await conn.commit()

    async def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[dict[str, Any]]:
        """Fetch a single row as a dict."""
        conn = self._require()
        async with conn.execute(sql, tuple(params)) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Fetch all rows as dicts."""
        conn = self._require()
        async with conn.execute(sql, tuple(params)) as cursor:
            rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
