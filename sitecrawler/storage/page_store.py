"""
Page store: one row per crawled URL holding its latest title, description and markup.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import aiosqlite

from .database import DatabaseManager
from ..errors import DatabaseError, PersistError
from ..utils.urls import normalize_url


@dataclass
class PageRecord:
    """Latest successfully fetched version of a URL."""
    url: str
    title: Optional[str]
    description: Optional[str]
    raw_content: Optional[str]


class PageStore:
    """Replace-on-conflict storage for crawled pages."""

    def __init__(self, database: DatabaseManager):
        self.database = database
        self.logger = logging.getLogger(__name__)

        c = database.config
        self._table = c.table_name
        self._url = c.url_column_name
        self._title = c.title_column_name
        self._description = c.description_column_name
        self._raw = c.raw_html_column_name

    async def upsert(self, url: str, title: Optional[str], description: Optional[str],
                     raw_content: Optional[str]) -> None:
        """
        Insert the page, or overwrite all fields if the URL is already stored.

        A single INSERT ... ON CONFLICT statement, so readers never see a
        partially updated row.
        """
        key = normalize_url(url)
        try:
            async with self.database.transaction() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO {self._table} ({self._url}, {self._title}, {self._description}, {self._raw})
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT({self._url}) DO UPDATE SET
                        {self._title} = excluded.{self._title},
                        {self._description} = excluded.{self._description},
                        {self._raw} = excluded.{self._raw}
                    """,
                    (key, title, description, raw_content),
                )
        except (aiosqlite.Error, DatabaseError) as e:
            raise PersistError(f"Failed to upsert page {key}: {e}") from e

        self.logger.debug("Stored page %s", key)

    async def get_page(self, url: str) -> Optional[PageRecord]:
        """Retrieve a stored page by URL."""
        key = normalize_url(url)
        async with self.database.connection() as conn:
            async with conn.execute(
                f"""
                SELECT {self._url}, {self._title}, {self._description}, {self._raw}
                FROM {self._table} WHERE {self._url} = ?
                """,
                (key,),
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return None
        return PageRecord(url=row[0], title=row[1], description=row[2], raw_content=row[3])

    async def count(self) -> int:
        async with self.database.connection() as conn:
            async with conn.execute(f"SELECT COUNT(*) FROM {self._table}") as cursor:
                row = await cursor.fetchone()
        return row[0]
