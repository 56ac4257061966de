"""
Database storage layer for the crawler.

All access goes through a DatabaseManager handle wrapping a bounded pool of
aiosqlite connections. Each operation borrows one connection and returns it.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Any, Optional

import aiosqlite

from ..errors import DatabaseError
from ..utils.config import DatabaseConfig


class ConnectionPool:
    """Bounded pool of SQLite connections, opened lazily."""

    def __init__(self, path: str, size: int = 10, busy_timeout: int = 5000):
        self.path = path
        self.size = size
        self.busy_timeout = busy_timeout
        self.logger = logging.getLogger(__name__)

        self._semaphore = asyncio.Semaphore(size)
        self._idle: List[aiosqlite.Connection] = []
        self._connections: List[aiosqlite.Connection] = []
        self._closed = False

    async def _connect(self) -> aiosqlite.Connection:
        # isolation_level=None: transactions are opened explicitly with BEGIN IMMEDIATE
        conn = await aiosqlite.connect(self.path, isolation_level=None)
        conn.row_factory = aiosqlite.Row
        await conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout)}")
        await conn.execute("PRAGMA journal_mode = WAL")
        await conn.execute("PRAGMA synchronous = NORMAL")
        self._connections.append(conn)
        self.logger.debug("Opened SQLite connection %d/%d", len(self._connections), self.size)
        return conn

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[aiosqlite.Connection]:
        """Borrow a connection for the duration of one operation."""
        if self._closed:
            raise DatabaseError("Connection pool is closed")

        async with self._semaphore:
            if self._closed:
                raise DatabaseError("Connection pool is closed")
            conn = self._idle.pop() if self._idle else await self._connect()
            try:
                yield conn
            finally:
                if self._closed:
                    await conn.close()
                else:
                    self._idle.append(conn)

    async def close(self):
        """Close every pooled connection."""
        self._closed = True
        idle, self._idle = self._idle, []
        for conn in idle:
            await conn.close()
        self.logger.debug("Connection pool closed (%d connections opened in total)",
                          len(self._connections))

    @property
    def closed(self) -> bool:
        return self._closed

    def get_stats(self) -> Dict[str, int]:
        return {
            'pool_size': self.size,
            'opened': len(self._connections),
            'idle': len(self._idle),
        }


class DatabaseManager:
    """
    Storage handle shared by the frontier and page stores.

    Owns the connection pool and provisions the pages and queue tables using
    the table and column names from DatabaseConfig.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.pool: Optional[ConnectionPool] = None
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        """Open the pool and create tables if they are missing."""
        try:
            Path(self.config.path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DatabaseError(f"Cannot create database directory for {self.config.path}: {e}") from e

        self.pool = ConnectionPool(
            self.config.path,
            size=self.config.pool_size,
            busy_timeout=self.config.busy_timeout
        )

        try:
            await self._create_tables()
        except aiosqlite.Error as e:
            await self.pool.close()
            raise DatabaseError(f"Failed to provision schema in {self.config.path}: {e}") from e

        self.logger.info("Database initialized at %s", self.config.path)

    async def _create_tables(self):
        c = self.config
        async with self.transaction() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {c.table_name} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    {c.url_column_name} TEXT NOT NULL UNIQUE,
                    {c.title_column_name} TEXT,
                    {c.description_column_name} TEXT,
                    {c.raw_html_column_name} TEXT
                )
            """)
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {c.queue_table_name} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    {c.url_column_name} TEXT NOT NULL UNIQUE,
                    {c.depth_column_name} INTEGER NOT NULL DEFAULT 0 CHECK ({c.depth_column_name} >= 0),
                    {c.is_crawled_column_name} INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT
                )
            """)
            await conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{c.queue_table_name}_claimable
                ON {c.queue_table_name} ({c.is_crawled_column_name}, {c.depth_column_name}, id)
            """)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Borrow a pooled connection in autocommit mode."""
        if self.pool is None:
            raise DatabaseError("Database not initialized")
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Borrow a connection inside a write transaction.

        BEGIN IMMEDIATE takes the database write lock up front, so reads made
        inside the block cannot be invalidated by a concurrent writer.
        """
        async with self.connection() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                await conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                raise

    async def get_stats(self) -> Dict[str, Any]:
        if self.pool is None:
            raise DatabaseError("Database not initialized")
        return {'path': self.config.path, **self.pool.get_stats()}

    async def close(self):
        """Release all pooled connections."""
        if self.pool and not self.pool.closed:
            await self.pool.close()
            self.logger.info("Database connections closed")
