"""
Database wrapper for the todo-sync core.

This module provides a thin wrapper around aiosqlite with the schema for
items, events, delivery bookkeeping and sessions.
"""

import aiosqlite
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, List, AsyncIterator, Union
import asyncio

from ..utils.errors import DatabaseError
from ..utils.logging import get_logger


logger = get_logger("todo-sync.storage")


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS items (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        status_timestamps TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_items_owner ON items(owner_id)",
    """
    CREATE TABLE IF NOT EXISTS events (
        user_id TEXT NOT NULL,
        event_id INTEGER NOT NULL,
        kind TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (user_id, event_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_created ON events(created_at)",
    """
    CREATE TABLE IF NOT EXISTS event_log_state (
        user_id TEXT PRIMARY KEY,
        last_event_id INTEGER NOT NULL DEFAULT 0,
        expired_through INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_deliveries (
        session_id TEXT NOT NULL,
        event_id INTEGER NOT NULL,
        status TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (session_id, event_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        last_seen_event_id INTEGER NOT NULL DEFAULT 0,
        connected_at TEXT,
        last_heartbeat TEXT,
        disconnected_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)",
)


class Database:
    """Async SQLite database wrapper.

    All statements share one connection. ``execute`` and friends take the
    statement lock per call; ``transaction`` holds it for the whole block, so
    statements inside a transaction must go through the yielded connection.
    """

    def __init__(
        self,
        db_path: Union[Path, str],
        timeout: float = 30.0,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
    ):
        """
        Initialize database wrapper.

        Args:
            db_path: Path to SQLite database file
            timeout: Busy timeout in seconds
            journal_mode: SQLite journal mode
            synchronous: SQLite synchronous setting
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.journal_mode = journal_mode
        self.synchronous = synchronous
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open database connection."""
        if self._connection is not None:
            return
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._connection = await aiosqlite.connect(
                str(self.db_path),
                timeout=self.timeout,
                isolation_level=None  # Autocommit mode
            )
        except Exception as e:
            raise DatabaseError(f"Failed to open {self.db_path}: {e}", cause=e) from e
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute(f"PRAGMA journal_mode={self.journal_mode}")
        await self._connection.execute(f"PRAGMA synchronous={self.synchronous}")

    async def initialize(self) -> None:
        """Connect and create the schema."""
        await self.connect()
        async with self.transaction() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)
        logger.info("database_initialized", path=str(self.db_path))

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def execute(self, sql: str, parameters: tuple = ()) -> aiosqlite.Cursor:
        """
        Execute SQL statement.

        Args:
            sql: SQL statement
            parameters: Query parameters

        Returns:
            Cursor object
        """
        async with self._lock:
            if not self._connection:
                await self.connect()
            return await self._connection.execute(sql, parameters)

    async def fetchone(self, sql: str, parameters: tuple = ()) -> Optional[aiosqlite.Row]:
        """Execute query and fetch one result."""
        async with self._lock:
            if not self._connection:
                await self.connect()
            async with self._connection.execute(sql, parameters) as cursor:
                return await cursor.fetchone()

    async def fetchall(self, sql: str, parameters: tuple = ()) -> List[aiosqlite.Row]:
        """Execute query and fetch all results."""
        async with self._lock:
            if not self._connection:
                await self.connect()
            async with self._connection.execute(sql, parameters) as cursor:
                return list(await cursor.fetchall())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT, rolling back on error."""
        async with self._lock:
            if not self._connection:
                await self.connect()
            conn = self._connection
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    @property
    def connection(self) -> Optional[aiosqlite.Connection]:
        """Get raw connection object."""
        return self._connection

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
