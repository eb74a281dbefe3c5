"""
Shared connection pool for the message ledger.

One ``StorePool`` holds a single ``aiosqlite.Connection`` per database path.
Every ``MessageLedger`` pointing at the same path borrows that connection, so
sessions driven concurrently in one process share SQLite's single writer
instead of contending for it.

Usage::

    pool = StorePool()

    ledger_a = MessageLedger(config, pool=pool)
    ledger_b = MessageLedger(config, pool=pool)   # same path → same connection

    await ledger_a.initialize()   # opens the connection
    await ledger_b.initialize()   # reuses it

    await pool.close_all()        # close every managed connection at shutdown
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import structlog

from runledger.errors import StorageError

_logger = structlog.get_logger("runledger.store.pool")


async def open_connection(
    db_path: str,
    *,
    wal_mode: bool = True,
    connection_timeout: float = 30.0,
) -> aiosqlite.Connection:
    """
    Open and configure a SQLite connection.

    Raises:
        StorageError: If the database file cannot be opened or configured.
    """
    try:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(db_path, timeout=connection_timeout)
    except (OSError, aiosqlite.Error) as exc:
        raise StorageError(f"Cannot open database at {db_path!r}: {exc}") from exc
    try:
        conn.row_factory = aiosqlite.Row
        if wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA synchronous=NORMAL")
    except aiosqlite.Error as exc:
        await conn.close()
        raise StorageError(f"Cannot configure database at {db_path!r}: {exc}") from exc
    return conn


class StorePool:
    """
    Process-scoped registry of open ``aiosqlite.Connection`` objects.

    Only safe to use from a single asyncio event loop.

    The pool also keeps a per-path ``asyncio.Lock`` that ``MessageLedger`` uses
    to serialise write transactions: WAL mode allows many readers but a single
    writer, and multi-statement transactions on a shared connection must not
    interleave.
    """

    def __init__(self) -> None:
        self._connections: dict[str, aiosqlite.Connection] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._open_locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def _resolve(db_path: str) -> str:
        return str(Path(db_path).expanduser().resolve())

    async def acquire(
        self,
        db_path: str,
        *,
        wal_mode: bool = True,
        connection_timeout: float = 30.0,
    ) -> aiosqlite.Connection:
        """
        Return the shared connection for *db_path*, opening it if needed.

        Raises:
            StorageError: If the connection cannot be opened.
        """
        resolved = self._resolve(db_path)

        if resolved in self._connections:
            return self._connections[resolved]

        lock = self._open_locks.setdefault(resolved, asyncio.Lock())
        async with lock:
            # Another coroutine may have opened it while we waited.
            if resolved in self._connections:
                return self._connections[resolved]

            conn = await open_connection(
                resolved, wal_mode=wal_mode, connection_timeout=connection_timeout
            )
            self._connections[resolved] = conn
            self._write_locks[resolved] = asyncio.Lock()
            _logger.debug("pool_connection_opened", db_path=resolved)
            return conn

    def write_lock(self, db_path: str) -> asyncio.Lock:
        """
        Return the write-serialisation lock for *db_path*.

        ``acquire()`` must have been called for this path first.
        """
        return self._write_locks[self._resolve(db_path)]

    async def close_path(self, db_path: str) -> None:
        """Close and forget the connection for a single path."""
        resolved = self._resolve(db_path)
        conn = self._connections.pop(resolved, None)
        self._write_locks.pop(resolved, None)
        self._open_locks.pop(resolved, None)
        if conn is not None:
            await conn.close()
            _logger.debug("pool_connection_closed", db_path=resolved)

    async def close_all(self) -> None:
        """Close every connection managed by this pool."""
        for path in list(self._connections):
            await self.close_path(path)
