"""
Crawl orchestrator: seeds the frontier and drains it with a fixed pool of workers.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Dict, List, Optional
from dataclasses import dataclass

from .frontier import FrontierStore, CrawlTask
from .fetcher import WebFetcher
from .parser import ContentParser, LinkExtractor
from .worker import FetchWorker, PageResult
from ..errors import ClaimError, DatabaseError, PersistError, StartupError, ConfigError
from ..storage.database import DatabaseManager
from ..storage.page_store import PageStore
from ..utils.config import Config
from ..utils.logger import CrawlerLogAdapter, get_crawler_logger
from ..utils.monitoring import CrawlerMonitor


class CrawlState(Enum):
    """Lifecycle of one crawl run."""
    SEEDING = "seeding"
    DRAINING = "draining"
    IDLE = "idle"
    STOPPED = "stopped"


@dataclass
class CrawlStats:
    """Statistics for one crawl run."""
    start_time: float
    urls_claimed: int = 0
    pages_fetched: int = 0
    pages_stored: int = 0
    links_enqueued: int = 0
    fetch_errors: int = 0
    persist_errors: int = 0
    claim_errors: int = 0

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    @property
    def pages_per_minute(self) -> float:
        elapsed_minutes = self.elapsed_time / 60
        return self.pages_fetched / elapsed_minutes if elapsed_minutes > 0 else 0


class CrawlerScheduler:
    """
    Owns the crawl control loop.

    SEEDING provisions the schema and queues the target URL at depth 0.
    DRAINING runs `max_connections` workers, each looping claim -> fetch ->
    persist -> extract -> enqueue. The run becomes IDLE once a claim finds
    nothing and no other worker is claiming or processing, or STOPPED after
    a cooperative stop.
    """

    def __init__(self, config: Config, fetch_worker: Optional[FetchWorker] = None,
                 monitor: Optional[CrawlerMonitor] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)

        # Components
        self.database: Optional[DatabaseManager] = None
        self.frontier: Optional[FrontierStore] = None
        self.page_store: Optional[PageStore] = None
        self.parser: Optional[ContentParser] = None
        self.fetch_worker = fetch_worker
        self.link_extractor = LinkExtractor(config.crawler.target_url)
        self.monitor = monitor or CrawlerMonitor(
            enable_server=config.monitoring.metrics_enabled,
            port=config.monitoring.prometheus_port
        )

        # Crawl state
        self.state: Optional[CrawlState] = None
        self.stats = CrawlStats(start_time=time.time())
        self.max_depth = config.crawler.max_depth
        self.workers: List[asyncio.Task] = []

        # Worker coordination. _active counts workers that have reserved a
        # slot to claim or process; _completed counts finished tasks;
        # _reserved counts claims against the max_pages budget, pending or won.
        self._condition = asyncio.Condition()
        self._stop_event = asyncio.Event()
        self._active = 0
        self._completed = 0
        self._drained = False
        self._reserved = 0

    async def initialize(self):
        """Initialize storage and the fetch worker. Raises StartupError on failure."""
        crawler = self.config.crawler

        try:
            self.parser = ContentParser(crawler.title_selector, crawler.description_selector)
        except ValueError as e:
            raise ConfigError(str(e)) from e

        self.database = DatabaseManager(self.config.database)
        try:
            await self.database.initialize()
        except DatabaseError as e:
            raise StartupError(f"Storage unavailable: {e}") from e

        self.frontier = FrontierStore(self.database)
        self.page_store = PageStore(self.database)

        if self.fetch_worker is None:
            fetcher = WebFetcher(
                user_agent=crawler.user_agent,
                request_timeout=crawler.request_timeout,
                max_concurrent_requests=crawler.max_connections,
                rate_limit=crawler.rate_limit,
                retries=crawler.retries,
                retry_timeout=crawler.retry_timeout
            )
            self.fetch_worker = FetchWorker(fetcher, self.parser)
        await self.fetch_worker.start()

        self.monitor.start_server()
        self.logger.info("Crawler scheduler initialized successfully")

    async def start_crawling(self, max_pages: Optional[int] = None,
                             max_duration: Optional[int] = None) -> CrawlState:
        """
        Run one crawl to completion.

        Args:
            max_pages: Stop cooperatively after this many claims (None for unlimited)
            max_duration: Stop cooperatively after this many seconds (None for unlimited)

        Returns:
            The terminal state, IDLE or STOPPED.
        """
        if self.frontier is None:
            raise StartupError("Scheduler not initialized")

        self.stats = CrawlStats(start_time=time.time())
        self._stop_event.clear()
        self._active = 0
        self._completed = 0
        self._drained = False
        self._reserved = 0

        self.state = CrawlState.SEEDING
        target_url = self.config.crawler.target_url
        try:
            await self.frontier.seed(target_url)
        except PersistError as e:
            raise StartupError(f"Failed to seed frontier with {target_url}: {e}") from e

        self.state = CrawlState.DRAINING
        num_workers = self.config.crawler.max_connections
        self.workers = [
            asyncio.create_task(self._worker(f"worker-{i}", max_pages))
            for i in range(num_workers)
        ]
        background = [asyncio.create_task(self._stats_reporter())]
        if max_duration:
            background.append(asyncio.create_task(self._deadline(max_duration)))

        self.logger.info("Started crawling %s with %d workers (max depth %d)",
                         target_url, num_workers, self.max_depth)

        try:
            results = await asyncio.gather(*self.workers, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    self.logger.error("Worker exited with error: %s", result)
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            self.workers = []

        self.state = CrawlState.STOPPED if self._stop_event.is_set() else CrawlState.IDLE
        await self._log_final_stats()
        return self.state

    async def _worker(self, worker_id: str, max_pages: Optional[int] = None):
        """Claim and process tasks until the frontier is drained or a stop is requested."""
        log = get_crawler_logger(__name__, worker_id=worker_id)
        log.debug("Worker %s started", worker_id)

        while not self._stop_event.is_set():
            budget_spent = False
            async with self._condition:
                if max_pages:
                    # Pending reservations may still come back empty
                    await self._condition.wait_for(
                        lambda: self._reserved < max_pages
                        or self.stats.urls_claimed >= max_pages
                        or self._drained or self._stop_event.is_set()
                    )
                if self._drained or self._stop_event.is_set():
                    break
                if max_pages and self._reserved >= max_pages:
                    budget_spent = True
                else:
                    self._active += 1
                    self._reserved += 1
                    seen = self._completed
                    self.monitor.update_in_flight(self._active)

            if budget_spent:
                log.info("Reached max pages limit: %d", max_pages)
                await self.stop_crawling()
                break

            task: Optional[CrawlTask] = None
            try:
                task = await self._claim(log)
                if task is not None:
                    await self._process_task(task, log)
            except Exception as e:
                log.error("Unexpected error processing %s: %s",
                          task.url if task else "claim", e, exc_info=True)
            finally:
                async with self._condition:
                    self._active -= 1
                    if task is not None:
                        self._completed += 1
                    else:
                        self._reserved -= 1
                        if self._active == 0 and self._completed == seen:
                            # Nobody else is working and nothing finished since our
                            # claim began, so no new rows can appear.
                            self._drained = True
                    self.monitor.update_in_flight(self._active)
                    self._condition.notify_all()

            if task is None:
                async with self._condition:
                    await self._condition.wait_for(
                        lambda: self._drained or self._stop_event.is_set() or self._completed != seen
                    )

        log.debug("Worker %s finished", worker_id)

    async def _claim(self, log: CrawlerLogAdapter) -> Optional[CrawlTask]:
        """Claim one task, backing off on storage errors before giving up for this attempt."""
        attempts = self.config.crawler.claim_retry_attempts
        backoff = self.config.crawler.claim_backoff

        for attempt in range(attempts + 1):
            try:
                task = await self.frontier.claim_next(self.max_depth)
            except ClaimError as e:
                self.stats.claim_errors += 1
                self.monitor.record_error('claim')
                if attempt == attempts:
                    log.error("Claim failed %d times, treating as no task: %s", attempt + 1, e)
                    return None
                log.warning("Claim failed (attempt %d/%d): %s", attempt + 1, attempts + 1, e)
                await asyncio.sleep(backoff * (2 ** attempt))
                continue

            if task is not None:
                self.stats.urls_claimed += 1
            return task

        return None

    async def _process_task(self, task: CrawlTask, log: CrawlerLogAdapter):
        """Fetch one claimed URL, persist it and enqueue its in-scope links."""
        log.log_url_event(logging.INFO, task.url, "Crawling %s (depth %d)",
                          task.url, task.depth, depth=task.depth)

        result = await self.fetch_worker.run(task)
        if not result.ok:
            self.stats.fetch_errors += 1
            self.monitor.record_error('fetch')
            log.log_url_event(logging.WARNING, task.url, "Fetch failed for %s: %s",
                              task.url, result.error, depth=task.depth)
            await self._record_failure(task, str(result.error), log)
            return

        self.stats.pages_fetched += 1
        self.monitor.record_page_fetched(result.fetch_time)

        await self._persist_page(task, result, log)

        if task.depth < self.max_depth:
            await self._enqueue_links(task, result, log)

    async def _persist_page(self, task: CrawlTask, result: PageResult, log: CrawlerLogAdapter):
        title, description = self.parser.extract_fields(result.document)
        try:
            await self.page_store.upsert(task.url, title, description, result.raw_content)
        except PersistError as e:
            self.stats.persist_errors += 1
            self.monitor.record_error('persist')
            log.error("Failed to store page %s: %s", task.url, e)
            await self._record_failure(task, str(e), log)
            return

        self.stats.pages_stored += 1
        self.monitor.record_page_stored()
        log.debug("Stored page %s", task.url)

    async def _enqueue_links(self, task: CrawlTask, result: PageResult, log: CrawlerLogAdapter):
        links = self.link_extractor.extract(result.document, result.final_url or task.url)
        if not links:
            return

        try:
            added = await self.frontier.enqueue(links, task.depth + 1)
        except PersistError as e:
            self.stats.persist_errors += 1
            self.monitor.record_error('persist')
            log.error("Failed to enqueue links from %s: %s", task.url, e)
            return

        self.stats.links_enqueued += added
        self.monitor.record_links_enqueued(added)
        log.debug("Queued %d new URLs from %s", added, task.url)

    async def _record_failure(self, task: CrawlTask, reason: str, log: CrawlerLogAdapter):
        try:
            await self.frontier.mark_failed(task.url, reason)
        except PersistError as e:
            log.error("Could not record failure for %s: %s", task.url, e)

    async def _deadline(self, max_duration: int):
        await asyncio.sleep(max_duration)
        self.logger.info("Reached max duration: %d seconds", max_duration)
        await self.stop_crawling()

    async def _stats_reporter(self):
        """Periodically log crawl statistics."""
        while True:
            try:
                await asyncio.sleep(30)
                await self._log_current_stats()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in stats reporter: %s", e)

    async def _log_current_stats(self):
        frontier_stats = await self.frontier.get_stats()
        self.monitor.update_frontier(frontier_stats)

        self.logger.info(
            "Crawl Progress: Claimed=%d, Stored=%d, Pending=%d, Errors=%d, Rate=%.1f pages/min",
            self.stats.urls_claimed,
            self.stats.pages_stored,
            frontier_stats['pending'],
            self.stats.fetch_errors + self.stats.persist_errors,
            self.stats.pages_per_minute
        )

    async def _log_final_stats(self):
        """Log final crawl statistics."""
        try:
            frontier_stats = await self.frontier.get_stats()
            self.monitor.update_frontier(frontier_stats)
        except DatabaseError as e:
            self.logger.warning("Could not read frontier statistics: %s", e)
            frontier_stats = {}

        self.logger.info("=== CRAWL %s ===", self.state.name if self.state else "FINISHED")
        self.logger.info("URLs claimed: %d", self.stats.urls_claimed)
        self.logger.info("Pages stored: %d", self.stats.pages_stored)
        self.logger.info("Links enqueued: %d", self.stats.links_enqueued)
        self.logger.info("Fetch errors: %d, persist errors: %d, claim errors: %d",
                         self.stats.fetch_errors, self.stats.persist_errors, self.stats.claim_errors)
        self.logger.info("Total time: %.2f seconds", self.stats.elapsed_time)
        self.logger.info("Frontier: %s", frontier_stats)
        self.logger.info("Metrics: %s", self.monitor.get_summary())

    async def stop_crawling(self):
        """
        Request a cooperative stop.

        No new claims are issued; tasks already in flight run to completion.
        """
        if not self._stop_event.is_set():
            self.logger.info("Stopping crawler...")
        self._stop_event.set()
        async with self._condition:
            self._condition.notify_all()

    async def wait_stopped(self):
        """Wait for running workers to finish their in-flight tasks."""
        if self.workers:
            await asyncio.gather(*self.workers, return_exceptions=True)

    async def close(self):
        """Stop the crawl and release the HTTP session and pooled connections."""
        try:
            if self.workers:
                await self.stop_crawling()
                await self.wait_stopped()

            if self.fetch_worker:
                await self.fetch_worker.close()

            if self.database:
                await self.database.close()

            self.logger.info("Crawler scheduler closed")

        except (DatabaseError, OSError) as e:
            self.logger.error("Error during cleanup: %s", e)

    def get_stats(self) -> Dict:
        """Get current crawl statistics."""
        return {
            'state': self.state.value if self.state else None,
            'urls_claimed': self.stats.urls_claimed,
            'pages_fetched': self.stats.pages_fetched,
            'pages_stored': self.stats.pages_stored,
            'links_enqueued': self.stats.links_enqueued,
            'fetch_errors': self.stats.fetch_errors,
            'persist_errors': self.stats.persist_errors,
            'claim_errors': self.stats.claim_errors,
            'elapsed_time': self.stats.elapsed_time,
            'pages_per_minute': self.stats.pages_per_minute,
            'in_flight': self._active,
        }
