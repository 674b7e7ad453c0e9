"""Bounded aiosqlite connection pool."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from pathlib import Path

import aiosqlite

from pr_assigner.errors import StoreUnavailableError

logger = logging.getLogger("pr_assigner")
MEMORY_DB = ":memory:"


async def open_connection(
    db_path: str | Path,
    busy_timeout_ms: int = 5000,
    journal_mode: str = "wal",
) -> aiosqlite.Connection:
    """Open one connection with the pragmas every pooled connection needs."""
    db = await aiosqlite.connect(
        str(db_path),
        isolation_level=None,  # CRITICAL: enables manual BEGIN IMMEDIATE
    )
    db.row_factory = aiosqlite.Row
    try:
        await db.execute(f"PRAGMA journal_mode={journal_mode.upper()}")
        await db.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        await db.execute("PRAGMA synchronous=NORMAL")
        await db.execute("PRAGMA foreign_keys=ON")
    except BaseException:
        await db.close()
        raise
    return db


class ConnectionPool:
    """Fixed-size pool of aiosqlite connections to one database file.

    Usage:
        pool = ConnectionPool("assigner.sqlite3", size=5, acquire_timeout=5.0)
        await pool.open()
        async with pool.acquire() as db:
            await db.execute("SELECT 1")
        await pool.close()

    acquire() waits up to ``acquire_timeout`` seconds for an idle connection
    and raises StoreUnavailableError when none frees up in time.
    """

    def __init__(
        self,
        db_path: str | Path,
        size: int = 5,
        acquire_timeout: float = 5.0,
        busy_timeout_ms: int = 5000,
        journal_mode: str = "wal",
    ) -> None:
        if size < 1:
            raise ValueError(f"Pool size must be >= 1, got {size}")
        if str(db_path) == MEMORY_DB and size > 1:
            raise ValueError("An in-memory database cannot be shared by more than one connection")
        self.db_path = str(db_path)
        self.size = size
        self.acquire_timeout = acquire_timeout
        self._busy_timeout_ms = busy_timeout_ms
        self._journal_mode = journal_mode
        self._idle: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue()
        self._connections: list[aiosqlite.Connection] = []
        self._closed = True

    @property
    def available(self) -> int:
        """Number of idle connections right now."""
        return self._idle.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        if not self._closed:
            return
        try:
            for _ in range(self.size):
                conn = await open_connection(
                    self.db_path,
                    busy_timeout_ms=self._busy_timeout_ms,
                    journal_mode=self._journal_mode,
                )
                self._connections.append(conn)
                self._idle.put_nowait(conn)
        except aiosqlite.Error as exc:
            await self._close_all()
            raise StoreUnavailableError(f"Failed to open database {self.db_path}: {exc}") from exc
        self._closed = False
        logger.info("Connection pool open - db=%s size=%s", self.db_path, self.size)

    @contextlib.asynccontextmanager
    async def acquire(self) -> AsyncIterator[aiosqlite.Connection]:
        if self._closed:
            raise StoreUnavailableError("Connection pool is closed")
        try:
            conn = await asyncio.wait_for(self._idle.get(), timeout=self.acquire_timeout)
        except TimeoutError:
            logger.warning(
                "pool -> exhausted (size=%s, waited %.1fs)", self.size, self.acquire_timeout
            )
            raise StoreUnavailableError(
                f"Connection pool exhausted: no connection available within "
                f"{self.acquire_timeout}s (size={self.size})"
            ) from None
        try:
            yield conn
        finally:
            if not self._closed:
                self._idle.put_nowait(conn)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._journal_mode == "wal" and self._connections:
            with contextlib.suppress(aiosqlite.Error):
                await self._connections[0].execute("PRAGMA wal_checkpoint(TRUNCATE)")
        await self._close_all()
        logger.info("Connection pool closed - db=%s", self.db_path)

    async def _close_all(self) -> None:
        while not self._idle.empty():
            self._idle.get_nowait()
        for conn in self._connections:
            with contextlib.suppress(Exception):
                await conn.close()
        self._connections.clear()
