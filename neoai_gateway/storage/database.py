"""SQLite-backed relational store for quota counters, conversations and usage."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger("neoai.storage")

_SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS rate_limits (
        user_id TEXT NOT NULL,
        window TEXT NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, window)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT 'New Chat',
        model TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_sessions_user_updated
    ON sessions(user_id, updated_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        model TEXT,
        tokens_used INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_session_created
    ON messages(session_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_log (
        id TEXT PRIMARY KEY,
        user_hash TEXT NOT NULL,
        model TEXT NOT NULL,
        tokens_in INTEGER NOT NULL DEFAULT 0,
        tokens_out INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
)


class DatabaseError(Exception):
    """Raised when a statement cannot be executed against the store."""


@dataclass(frozen=True)
class Statement:
    sql: str
    params: tuple[Any, ...] = ()


@dataclass
class StatementResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    rows_affected: int = 0


@dataclass
class Database:
    path: Path
    backend: str = "sqlite"

    def __post_init__(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.path))
        connection.row_factory = sqlite3.Row
        return connection

    def _ensure_schema(self) -> None:
        with self._connect() as connection:
            for ddl in _SCHEMA:
                connection.execute(ddl)
            connection.commit()

    # ---- Synchronous primitives, run on a worker thread ----

    def _run_batch(self, statements: list[Statement]) -> list[StatementResult]:
        results: list[StatementResult] = []
        connection = self._connect()
        try:
            with connection:
                for statement in statements:
                    cursor = connection.execute(statement.sql, statement.params)
                    rows = [dict(row) for row in cursor.fetchall()]
                    results.append(
                        StatementResult(rows=rows, rows_affected=max(cursor.rowcount, 0))
                    )
        except sqlite3.Error as exc:
            raise DatabaseError(f"sqlite statement failed: {exc}") from exc
        finally:
            connection.close()
        return results

    # ---- Async surface ----

    async def batch(self, statements: list[Statement]) -> list[StatementResult]:
        """Run ``statements`` in one transaction; all succeed or none apply."""
        if not statements:
            return []
        return await asyncio.to_thread(self._run_batch, list(statements))

    async def execute(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        results = await self.batch([Statement(sql, params)])
        return results[0].rows_affected

    async def fetch_one(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        results = await self.batch([Statement(sql, params)])
        rows = results[0].rows
        return rows[0] if rows else None

    async def fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        results = await self.batch([Statement(sql, params)])
        return results[0].rows

    async def ping(self) -> bool:
        try:
            await self.fetch_one("SELECT 1 AS ok")
        except DatabaseError:
            logger.warning("database_ping_failed", extra={"backend": self.backend})
            return False
        return True
