"""
Fetch worker: the boundary between the scheduler and the network/parse engines.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from bs4 import BeautifulSoup

from .fetcher import WebFetcher
from .frontier import CrawlTask
from .parser import ContentParser
from ..errors import FetchError


@dataclass
class PageResult:
    """Outcome of one fetch+parse: a parsed document or an error."""
    url: str
    depth: int
    document: Optional[BeautifulSoup] = None
    raw_content: Optional[str] = None
    final_url: Optional[str] = None
    status_code: int = 0
    error: Optional[FetchError] = None
    fetch_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and self.document is not None


class FetchWorker:
    """Fetches and parses one claimed task, never raising for per-page failures."""

    def __init__(self, fetcher: WebFetcher, parser: ContentParser):
        self.fetcher = fetcher
        self.parser = parser
        self.logger = logging.getLogger(__name__)

    async def start(self):
        await self.fetcher.start()

    async def close(self):
        await self.fetcher.close()

    async def run(self, task: CrawlTask) -> PageResult:
        result = await self.fetcher.fetch(task.url)
        if not result.ok:
            return PageResult(
                url=task.url,
                depth=task.depth,
                final_url=result.final_url,
                status_code=result.status_code,
                error=FetchError(result.error or "Empty response"),
                fetch_time=result.fetch_time,
            )

        try:
            document = self.parser.parse(result.content)
        except (ValueError, TypeError) as e:
            self.logger.error("Parse failed for %s: %s", task.url, e)
            return PageResult(
                url=task.url,
                depth=task.depth,
                raw_content=result.content,
                final_url=result.final_url,
                status_code=result.status_code,
                error=FetchError(f"Parse error: {e}"),
                fetch_time=result.fetch_time,
            )

        return PageResult(
            url=task.url,
            depth=task.depth,
            document=document,
            raw_content=result.content,
            final_url=result.final_url,
            status_code=result.status_code,
            fetch_time=result.fetch_time,
        )
