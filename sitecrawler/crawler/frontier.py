"""
Durable crawl frontier.

Every discovered URL gets exactly one row in the queue table, holding the
depth at which it was first discovered and whether it has been claimed.
Rows are never deleted, so the table doubles as the visited set.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import aiosqlite

from ..errors import ClaimError, DatabaseError, PersistError
from ..storage.database import DatabaseManager
from ..utils.urls import normalize_url


@dataclass
class CrawlTask:
    """In-memory projection of one claimed frontier row."""
    url: str
    depth: int
    id: Optional[int] = None


@dataclass
class FrontierEntry:
    """A row of the frontier table."""
    id: int
    url: str
    depth: int
    claimed: bool
    last_error: Optional[str] = None


class FrontierStore:
    """
    Frontier backed by the queue table.

    Insertion is insert-if-absent: the first discovery of a URL fixes its
    depth. claim_next() is the only point of mutual exclusion between workers.
    """

    def __init__(self, database: DatabaseManager):
        self.database = database
        self.logger = logging.getLogger(__name__)

        c = database.config
        self._table = c.queue_table_name
        self._url = c.url_column_name
        self._depth = c.depth_column_name
        self._claimed = c.is_crawled_column_name

    async def seed(self, url: str) -> bool:
        """
        Queue the seed URL at depth 0.

        Returns True if a row was created; seeding a known URL is a no-op.
        """
        added = await self.enqueue([url], 0)
        if added:
            self.logger.info("Seeded frontier with %s", url)
        else:
            self.logger.info("Seed URL already known to frontier: %s", url)
        return added == 1

    async def enqueue(self, urls: Iterable[str], depth: int) -> int:
        """
        Insert URLs at the given depth, skipping any URL already present.

        Returns the number of new rows. Raises PersistError on storage failure.
        """
        if depth < 0:
            raise ValueError(f"depth must be non-negative, got {depth}")

        keys = list(dict.fromkeys(normalize_url(url) for url in urls if url and url.strip()))
        if not keys:
            return 0

        try:
            async with self.database.transaction() as conn:
                cursor = await conn.executemany(
                    f"""
                    INSERT OR IGNORE INTO {self._table} ({self._url}, {self._depth}, {self._claimed})
                    VALUES (?, ?, 0)
                    """,
                    [(key, depth) for key in keys],
                )
                added = max(cursor.rowcount, 0)
                await cursor.close()
        except (aiosqlite.Error, DatabaseError) as e:
            raise PersistError(f"Failed to enqueue {len(keys)} URLs at depth {depth}: {e}") from e

        self.logger.debug("Enqueued %d/%d URLs at depth %d", added, len(keys), depth)
        return added

    async def claim_next(self, max_depth: int) -> Optional[CrawlTask]:
        """
        Atomically claim the shallowest unclaimed row with depth <= max_depth.

        Select and mark happen in one UPDATE ... RETURNING statement under a
        write lock, so two callers can never receive the same row. Returns
        None when nothing is eligible; raises ClaimError on storage failure.
        """
        try:
            async with self.database.transaction() as conn:
                async with conn.execute(
                    f"""
                    UPDATE {self._table} SET {self._claimed} = 1
                    WHERE id = (
                        SELECT id FROM {self._table}
                        WHERE {self._claimed} = 0 AND {self._depth} <= ?
                        ORDER BY {self._depth} ASC, id ASC
                        LIMIT 1
                    ) AND {self._claimed} = 0
                    RETURNING id, {self._url}, {self._depth}
                    """,
                    (max_depth,),
                ) as cursor:
                    rows = await cursor.fetchall()
        except (aiosqlite.Error, DatabaseError) as e:
            raise ClaimError(f"Failed to claim from frontier: {e}") from e

        if not rows:
            return None

        row = rows[0]
        task = CrawlTask(url=row[1], depth=row[2], id=row[0])
        self.logger.debug("Claimed %s (depth %d)", task.url, task.depth)
        return task

    async def claim_batch(self, n: int, max_depth: int) -> List[CrawlTask]:
        """
        Claim up to n tasks, stopping early when the frontier is exhausted.

        A claim failure is logged and ends the batch.
        """
        tasks: List[CrawlTask] = []
        while len(tasks) < n:
            try:
                task = await self.claim_next(max_depth)
            except ClaimError as e:
                self.logger.warning("Claim failed after %d tasks: %s", len(tasks), e)
                break
            if task is None:
                break
            tasks.append(task)
        return tasks

    async def mark_failed(self, url: str, reason: str) -> None:
        """Record why a claimed URL produced no page. The row stays claimed."""
        try:
            async with self.database.transaction() as conn:
                await conn.execute(
                    f"UPDATE {self._table} SET last_error = ? WHERE {self._url} = ?",
                    (reason, normalize_url(url)),
                )
        except (aiosqlite.Error, DatabaseError) as e:
            raise PersistError(f"Failed to record failure for {url}: {e}") from e

    async def get_entry(self, url: str) -> Optional[FrontierEntry]:
        try:
            async with self.database.connection() as conn:
                async with conn.execute(
                    f"""
                    SELECT id, {self._url}, {self._depth}, {self._claimed}, last_error
                    FROM {self._table} WHERE {self._url} = ?
                    """,
                    (normalize_url(url),),
                ) as cursor:
                    row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to read frontier entry for {url}: {e}") from e

        if row is None:
            return None
        return FrontierEntry(
            id=row[0],
            url=row[1],
            depth=row[2],
            claimed=bool(row[3]),
            last_error=row[4],
        )

    async def get_stats(self) -> Dict[str, int]:
        """Get frontier statistics."""
        try:
            async with self.database.connection() as conn:
                async with conn.execute(
                    f"""
                    SELECT COUNT(*),
                           COALESCE(SUM({self._claimed} = 1), 0),
                           COALESCE(SUM({self._claimed} = 0), 0),
                           COALESCE(SUM(last_error IS NOT NULL), 0)
                    FROM {self._table}
                    """
                ) as cursor:
                    row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to read frontier statistics: {e}") from e

        return {
            'total': row[0],
            'claimed': row[1],
            'pending': row[2],
            'failed': row[3],
        }
