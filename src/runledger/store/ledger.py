"""Append-only, SQLite-backed message ledger."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import aiosqlite
import structlog

from runledger.errors import (
    DuplicateSessionError,
    SessionNotFoundError,
    StorageError,
    StoreNotInitializedError,
)
from runledger.models.config import StoreConfig
from runledger.models.message import (
    Message,
    MessageContent,
    Role,
    Run,
    content_adapter,
)

if TYPE_CHECKING:
    from runledger.store.pool import StorePool


def _now() -> int:
    return int(time.time())


class Session:
    """Thin data class for session rows (not Pydantic; avoids validation on reads)."""

    __slots__ = (
        "created_at",
        "id",
        "last_compacted_at",
        "metadata",
        "summary",
        "updated_at",
    )

    def __init__(
        self,
        id: str,
        created_at: int,
        updated_at: int,
        summary: str | None = None,
        last_compacted_at: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.id = id
        self.created_at = created_at
        self.updated_at = updated_at
        self.summary = summary
        self.last_compacted_at = last_compacted_at
        self.metadata = metadata


class MessageLedger:
    """
    Durable, per-session ordered log of conversation turns.

    Message ids come from SQLite's ``AUTOINCREMENT`` and are therefore strictly
    increasing in append order; every read orders by id. The only deletion is
    ``prune_before()``, which is anchored to a message id rather than a list
    position, so turns appended after a compaction snapshot are never removed.

    Token counts are supplied by the caller. A message appended without one
    contributes zero to ``total_tokens()``; the ledger does no measuring.

    Usage::

        ledger = MessageLedger(StoreConfig(db_path="agent.sqlite"))
        await ledger.initialize()
        try:
            session = await ledger.create_session("sess_01J...")
            await ledger.append(session.id, "user", "hello", token_count=3)
        finally:
            await ledger.close()
    """

    def __init__(self, config: StoreConfig, pool: StorePool | None = None) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._pool = pool
        self._conn: aiosqlite.Connection | None = None
        self._write_lock: asyncio.Lock | None = None
        self._logger = structlog.get_logger("runledger.store")

    async def initialize(self) -> None:
        """
        Open (or borrow) a database connection and apply the schema.

        Raises:
            StorageError: If the database cannot be opened or the schema fails.
        """
        from runledger.store.pool import open_connection

        if self._pool is not None:
            conn = await self._pool.acquire(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )
            self._write_lock = self._pool.write_lock(self._db_path)
        else:
            conn = await open_connection(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )
            self._write_lock = asyncio.Lock()

        schema = (Path(__file__).parent / "schema.sql").read_text()
        try:
            await conn.executescript(schema)
            await conn.commit()
        except aiosqlite.Error as exc:
            if self._pool is None:
                await conn.close()
            raise StorageError(f"Failed to apply schema: {exc}") from exc

        self._conn = conn
        self._logger.info("ledger_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """
        Release the database connection.

        Pool-managed connections are left open; the pool owns their lifetime.
        """
        if self._conn is None:
            return
        if self._pool is None:
            await self._conn.close()
        self._conn = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreNotInitializedError()
        return self._conn

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialised write transaction: commit on success, roll back on error."""
        conn = self._conn_or_raise()
        assert self._write_lock is not None
        async with self._write_lock:
            try:
                yield conn
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

    # ── Session Methods ────────────────────────────────────────────────────────

    async def create_session(
        self,
        id: str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """
        Insert a new session row.

        Raises:
            DuplicateSessionError: If a session with this id already exists.
            StorageError: On any other database failure.
        """
        now = _now()
        meta_json = json.dumps(metadata) if metadata else None
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    "INSERT INTO sessions (id, created_at, updated_at, metadata)"
                    " VALUES (?, ?, ?, ?)",
                    (id, now, now, meta_json),
                )
        except aiosqlite.IntegrityError as exc:
            raise DuplicateSessionError(id) from exc
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to create session {id!r}: {exc}") from exc

        self._logger.info("session_row_created", session_id=id)
        return Session(id=id, created_at=now, updated_at=now, metadata=metadata)

    async def find_session(self, session_id: str) -> Session | None:
        """Fetch a session by id, or None if it does not exist."""
        row = await self._fetchone("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return self._row_to_session(row) if row is not None else None

    async def get_session(self, session_id: str) -> Session:
        """
        Fetch a session by id.

        Raises:
            SessionNotFoundError: If no session with this id exists.
        """
        session = await self.find_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def list_sessions(self, limit: int = 10) -> list[Session]:
        """List sessions, most recently updated first."""
        rows = await self._fetchall(
            "SELECT * FROM sessions ORDER BY updated_at DESC, created_at DESC LIMIT ?",
            (limit,),
        )
        return [self._row_to_session(r) for r in rows]

    async def set_summary(
        self,
        session_id: str,
        summary: str,
        compacted_at: int | None = None,
    ) -> None:
        """Persist the cumulative summary and the compaction timestamp."""
        ts = compacted_at if compacted_at is not None else _now()
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    "UPDATE sessions SET summary_text = ?, last_compacted_at = ?, updated_at = ?"
                    " WHERE id = ?",
                    (summary, ts, ts, session_id),
                )
                if cursor.rowcount == 0:
                    raise SessionNotFoundError(session_id)
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to store summary: {exc}") from exc
        self._logger.info("summary_stored", session_id=session_id, length=len(summary))

    # ── Message Methods ────────────────────────────────────────────────────────

    async def append(
        self,
        session_id: str,
        role: Role,
        content: MessageContent,
        token_count: int | None = None,
    ) -> Message:
        """
        Append a turn to the session's log.

        Assigns the next message id and bumps the session's ``updated_at`` in
        the same transaction.

        Args:
            session_id: The owning session.
            role: ``"user"``, ``"assistant"`` or ``"system"``.
            content: Plain text or a list of typed content parts.
            token_count: Caller-supplied token count; None contributes zero.

        Raises:
            SessionNotFoundError: If the session does not exist.
            StorageError: On any other database failure.
        """
        stored, content_type = self._serialize_content(content)
        now = _now()
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    "INSERT INTO messages"
                    " (session_id, role, content, content_type, created_at, token_count)"
                    " VALUES (?, ?, ?, ?, ?, ?)",
                    (session_id, role, stored, content_type, now, token_count),
                )
                message_id = cursor.lastrowid
                await conn.execute(
                    "UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session_id)
                )
        except aiosqlite.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc):
                raise SessionNotFoundError(session_id) from exc
            raise StorageError(f"Failed to append message: {exc}") from exc
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to append message: {exc}") from exc

        assert message_id is not None
        self._logger.debug(
            "message_appended", session_id=session_id, role=role, message_id=message_id
        )
        return Message(
            id=message_id,
            session_id=session_id,
            role=role,
            content=content,
            created_at=now,
            token_count=token_count,
        )

    async def recent_window(self, session_id: str, n: int) -> list[Message]:
        """Return the last *n* messages of a session in chronological order."""
        if n <= 0:
            return []
        rows = await self._fetchall(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY id DESC LIMIT ?",
            (session_id, n),
        )
        return [self._row_to_message(r) for r in reversed(rows)]

    async def all(self, session_id: str) -> list[Message]:
        """Return every persisted message of a session in chronological order."""
        rows = await self._fetchall(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY id ASC", (session_id,)
        )
        return [self._row_to_message(r) for r in rows]

    async def prune_before(self, session_id: str, message_id: int) -> int:
        """
        Delete every message of the session with an id strictly below *message_id*.

        Returns:
            Number of deleted messages.
        """
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    "DELETE FROM messages WHERE session_id = ? AND id < ?",
                    (session_id, message_id),
                )
                deleted = cursor.rowcount
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to prune messages: {exc}") from exc
        self._logger.info(
            "messages_pruned", session_id=session_id, before_id=message_id, deleted=deleted
        )
        return deleted

    async def apply_compaction(
        self,
        session_id: str,
        summary: str,
        before_id: int,
        compacted_at: int | None = None,
    ) -> int:
        """
        Store a new summary and prune the messages it covers in one transaction.

        Either both writes land or neither does, so a failure never leaves a
        summary that already covers messages still present in the log.

        Returns:
            Number of deleted messages.

        Raises:
            SessionNotFoundError: If the session does not exist.
            StorageError: On any other database failure.
        """
        ts = compacted_at if compacted_at is not None else _now()
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    "UPDATE sessions SET summary_text = ?, last_compacted_at = ?, updated_at = ?"
                    " WHERE id = ?",
                    (summary, ts, ts, session_id),
                )
                if cursor.rowcount == 0:
                    raise SessionNotFoundError(session_id)
                cursor = await conn.execute(
                    "DELETE FROM messages WHERE session_id = ? AND id < ?",
                    (session_id, before_id),
                )
                deleted = cursor.rowcount
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to apply compaction: {exc}") from exc
        self._logger.info(
            "compaction_applied",
            session_id=session_id,
            summary_length=len(summary),
            before_id=before_id,
            deleted=deleted,
        )
        return deleted

    async def total_tokens(self, session_id: str) -> int:
        """Sum of non-null token counts over the session's persisted messages."""
        row = await self._fetchone(
            "SELECT COALESCE(SUM(token_count), 0) AS total FROM messages"
            " WHERE session_id = ? AND token_count IS NOT NULL",
            (session_id,),
        )
        return int(row["total"]) if row is not None else 0

    # ── Run Methods ────────────────────────────────────────────────────────────

    async def create_run(self, session_id: str, step_no: int) -> Run:
        """Record the start of an agent step with status ``running``."""
        now = _now()
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    "INSERT INTO runs (session_id, step_no, status, created_at)"
                    " VALUES (?, ?, 'running', ?)",
                    (session_id, step_no, now),
                )
                run_id = cursor.lastrowid
        except aiosqlite.IntegrityError as exc:
            raise SessionNotFoundError(session_id) from exc
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to create run: {exc}") from exc
        assert run_id is not None
        return Run(id=run_id, session_id=session_id, step_no=step_no, created_at=now)

    async def finish_run(
        self,
        run_id: int,
        status: Literal["running", "completed", "failed"],
        error: str | None = None,
    ) -> None:
        """Update a run's status and error text."""
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    "UPDATE runs SET status = ?, error = ? WHERE id = ?",
                    (status, error, run_id),
                )
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to update run {run_id}: {exc}") from exc

    async def list_runs(self, session_id: str) -> list[Run]:
        """Return a session's runs ordered by step number."""
        rows = await self._fetchall(
            "SELECT * FROM runs WHERE session_id = ? ORDER BY step_no ASC, id ASC",
            (session_id,),
        )
        return [
            Run(
                id=r["id"],
                session_id=r["session_id"],
                step_no=r["step_no"],
                status=r["status"],
                error=r["error"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ── Private Helpers ────────────────────────────────────────────────────────

    async def _fetchone(self, sql: str, params: tuple[Any, ...]) -> aiosqlite.Row | None:
        conn = self._conn_or_raise()
        try:
            async with conn.execute(sql, params) as cursor:
                return await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StorageError(f"Query failed: {exc}") from exc

    async def _fetchall(self, sql: str, params: tuple[Any, ...]) -> list[aiosqlite.Row]:
        conn = self._conn_or_raise()
        try:
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise StorageError(f"Query failed: {exc}") from exc

    @staticmethod
    def _serialize_content(content: MessageContent) -> tuple[str, str]:
        if isinstance(content, str):
            return content, "text"
        return content_adapter.dump_json(content).decode(), "parts"

    def _row_to_session(self, row: aiosqlite.Row) -> Session:
        return Session(
            id=row["id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            summary=row["summary_text"],
            last_compacted_at=row["last_compacted_at"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        )

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        content: MessageContent
        if row["content_type"] == "parts":
            content = content_adapter.validate_json(row["content"])
        else:
            content = row["content"]
        return Message(
            id=row["id"],
            session_id=row["session_id"],
            role=row["role"],
            content=content,
            created_at=row["created_at"],
            token_count=row["token_count"],
        )
