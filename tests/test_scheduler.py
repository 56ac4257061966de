"""
Scheduler Tests

End-to-end crawl runs against a real SQLite store with the network replaced
by an in-memory site.
"""

import asyncio
from unittest.mock import patch

import pytest

from sitecrawler.crawler.parser import ContentParser
from sitecrawler.crawler.scheduler import CrawlerScheduler, CrawlState
from sitecrawler.crawler.worker import PageResult
from sitecrawler.errors import ClaimError, FetchError, PersistError, StartupError
from sitecrawler.crawler.frontier import FrontierStore
from sitecrawler.storage.database import DatabaseManager
from sitecrawler.storage.page_store import PageStore


def page(title, *links, description=None):
    meta = f'<meta name="description" content="{description}">' if description else ''
    anchors = ''.join(f'<a href="{link}">{link}</a>' for link in links)
    return f'<html><head><title>{title}</title>{meta}</head><body>{anchors}</body></html>'


class FakeFetchWorker:
    """Serves pages from a dict; URLs mapped to None fail like a 404."""

    def __init__(self, site, gate=None):
        self.site = site
        self.gate = gate
        self.parser = ContentParser()
        self.fetched = []

    async def start(self):
        pass

    async def close(self):
        pass

    async def run(self, task):
        self.fetched.append(task.url)
        if self.gate is not None:
            await self.gate.wait()

        html = self.site.get(task.url)
        if html is None:
            return PageResult(url=task.url, depth=task.depth, status_code=404,
                              error=FetchError("HTTP 404"))

        return PageResult(
            url=task.url,
            depth=task.depth,
            document=self.parser.parse(html),
            raw_content=html,
            final_url=task.url,
            status_code=200,
        )


async def run_crawl(config, site, **kwargs):
    worker = FakeFetchWorker(site)
    scheduler = CrawlerScheduler(config, fetch_worker=worker)
    await scheduler.initialize()
    try:
        state = await scheduler.start_crawling(**kwargs)
    finally:
        await scheduler.close()
    return state, worker, scheduler


async def open_stores(config):
    database = DatabaseManager(config.database)
    await database.initialize()
    return database, FrontierStore(database), PageStore(database)


@pytest.mark.asyncio
async def test_discovers_in_scope_links(config):
    site = {
        "https://example.com/": page("Home", "/a", "/b", "https://other.org/x",
                                     description="Root page"),
        "https://example.com/a": page("A"),
        "https://example.com/b": page("B"),
    }

    state, worker, _ = await run_crawl(config, site)

    assert state == CrawlState.IDLE
    assert sorted(worker.fetched) == sorted(site)

    database, frontier, pages = await open_stores(config)
    try:
        for url in ("https://example.com/a", "https://example.com/b"):
            entry = await frontier.get_entry(url)
            assert entry.depth == 1
            assert entry.claimed is True
        assert await frontier.get_entry("https://other.org/x") is None
        assert (await frontier.get_stats())['total'] == 3

        home = await pages.get_page("https://example.com/")
        assert home.title == "Home"
        assert home.description == "Root page"
        assert home.raw_content == site["https://example.com/"]
        assert await pages.count() == 3
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_depth_zero_fetches_only_seed(config):
    config.crawler.max_depth = 0
    site = {"https://example.com/": page("Home", "/a", "/b")}

    state, worker, scheduler = await run_crawl(config, site)

    assert state == CrawlState.IDLE
    assert worker.fetched == ["https://example.com/"]
    assert scheduler.get_stats()['urls_claimed'] == 1

    database, frontier, _ = await open_stores(config)
    try:
        assert (await frontier.get_stats())['total'] == 1
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_links_at_max_depth_are_not_enqueued(config):
    site = {
        "https://example.com/": page("Home", "/a"),
        "https://example.com/a": page("A", "/deeper"),
    }

    state, worker, _ = await run_crawl(config, site)

    assert state == CrawlState.IDLE
    assert "https://example.com/deeper" not in worker.fetched

    database, frontier, _ = await open_stores(config)
    try:
        assert await frontier.get_entry("https://example.com/deeper") is None
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_failed_fetch_is_recorded_and_crawl_continues(config):
    site = {
        "https://example.com/": page("Home", "/broken", "/ok"),
        "https://example.com/broken": None,
        "https://example.com/ok": page("OK"),
    }

    state, _, scheduler = await run_crawl(config, site)

    assert state == CrawlState.IDLE
    assert scheduler.get_stats()['fetch_errors'] == 1

    database, frontier, pages = await open_stores(config)
    try:
        assert await pages.get_page("https://example.com/broken") is None
        assert await pages.get_page("https://example.com/ok") is not None

        entry = await frontier.get_entry("https://example.com/broken")
        assert entry.claimed is True
        assert entry.last_error == "HTTP 404"
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_shallowest_discovery_wins(config):
    config.crawler.max_depth = 2
    site = {
        "https://example.com/": page("Home", "/a", "/b"),
        "https://example.com/a": page("A", "/b"),
        "https://example.com/b": page("B"),
    }

    state, worker, _ = await run_crawl(config, site)

    assert state == CrawlState.IDLE
    assert worker.fetched.count("https://example.com/b") == 1

    database, frontier, _ = await open_stores(config)
    try:
        assert (await frontier.get_entry("https://example.com/b")).depth == 1
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_every_url_fetched_once_with_many_workers(config):
    config.crawler.max_connections = 8
    config.crawler.max_depth = 3
    # Every page links to every other page
    urls = [f"/p{i}" for i in range(15)]
    site = {"https://example.com/": page("Home", *urls)}
    for url in urls:
        site[f"https://example.com{url}"] = page(url, "/", *urls)

    state, worker, _ = await run_crawl(config, site)

    assert state == CrawlState.IDLE
    assert len(worker.fetched) == len(site)
    assert len(set(worker.fetched)) == len(site)


@pytest.mark.asyncio
async def test_rerun_resumes_without_refetching(config):
    site = {
        "https://example.com/": page("Home", "/a"),
        "https://example.com/a": page("A"),
    }

    await run_crawl(config, site)
    state, worker, _ = await run_crawl(config, site)

    assert state == CrawlState.IDLE
    assert worker.fetched == []


@pytest.mark.asyncio
async def test_stop_lets_in_flight_task_finish(config):
    site = {
        "https://example.com/": page("Home", "/a"),
        "https://example.com/a": page("A"),
    }
    gate = asyncio.Event()
    worker = FakeFetchWorker(site, gate=gate)
    scheduler = CrawlerScheduler(config, fetch_worker=worker)
    await scheduler.initialize()

    try:
        crawl = asyncio.create_task(scheduler.start_crawling())
        while not worker.fetched:
            await asyncio.sleep(0.01)

        await scheduler.stop_crawling()
        gate.set()
        state = await asyncio.wait_for(crawl, timeout=5)
    finally:
        await scheduler.close()

    assert state == CrawlState.STOPPED
    assert worker.fetched == ["https://example.com/"]

    database, frontier, pages = await open_stores(config)
    try:
        assert await pages.get_page("https://example.com/") is not None
        entry = await frontier.get_entry("https://example.com/a")
        assert entry.claimed is False
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_max_pages_stops_crawl(config):
    config.crawler.max_connections = 1
    site = {
        "https://example.com/": page("Home", "/a", "/b"),
        "https://example.com/a": page("A"),
        "https://example.com/b": page("B"),
    }

    state, worker, _ = await run_crawl(config, site, max_pages=2)

    assert state == CrawlState.STOPPED
    assert len(worker.fetched) == 2


@pytest.mark.asyncio
async def test_max_pages_holds_with_many_workers(config):
    config.crawler.max_connections = 8
    urls = [f"/p{i}" for i in range(10)]
    site = {"https://example.com/": page("Home", *urls)}
    for url in urls:
        site[f"https://example.com{url}"] = page(url)

    state, worker, scheduler = await run_crawl(config, site, max_pages=2)

    assert state == CrawlState.STOPPED
    assert len(worker.fetched) == 2
    assert scheduler.get_stats()['urls_claimed'] == 2

    database, frontier, _ = await open_stores(config)
    try:
        assert (await frontier.get_stats())['claimed'] == 2
    finally:
        await database.close()


def flaky_claims(frontier, failures):
    """Make the next `failures` claims (all of them if None) raise ClaimError."""
    original_claim = frontier.claim_next
    calls = {'count': 0}

    async def claim_next(max_depth):
        calls['count'] += 1
        if failures is None or calls['count'] <= failures:
            raise ClaimError("database is locked")
        return await original_claim(max_depth)

    return patch.object(frontier, "claim_next", side_effect=claim_next)


@pytest.mark.asyncio
async def test_claim_errors_are_retried_until_success(config):
    config.crawler.max_connections = 1
    config.crawler.max_depth = 0
    site = {"https://example.com/": page("Home")}
    worker = FakeFetchWorker(site)
    scheduler = CrawlerScheduler(config, fetch_worker=worker)
    await scheduler.initialize()

    try:
        with flaky_claims(scheduler.frontier, failures=2):
            state = await scheduler.start_crawling()
    finally:
        await scheduler.close()

    assert state == CrawlState.IDLE
    assert worker.fetched == ["https://example.com/"]
    assert scheduler.get_stats()['claim_errors'] == 2
    assert scheduler.monitor.get_value('crawler_errors_total', {'error_type': 'claim'}) == 2


@pytest.mark.asyncio
async def test_exhausted_claim_retries_count_as_no_task(config):
    config.crawler.max_connections = 1
    config.crawler.claim_retry_attempts = 2
    site = {"https://example.com/": page("Home")}
    worker = FakeFetchWorker(site)
    scheduler = CrawlerScheduler(config, fetch_worker=worker)
    await scheduler.initialize()

    try:
        with flaky_claims(scheduler.frontier, failures=None):
            state = await asyncio.wait_for(scheduler.start_crawling(), timeout=5)
    finally:
        await scheduler.close()

    assert state == CrawlState.IDLE
    assert worker.fetched == []
    assert scheduler.get_stats()['claim_errors'] == 3

    database, frontier, _ = await open_stores(config)
    try:
        entry = await frontier.get_entry("https://example.com/")
        assert entry.claimed is False
    finally:
        await database.close()


@pytest.mark.asyncio
async def test_metrics_follow_crawl(config):
    site = {
        "https://example.com/": page("Home", "/a"),
        "https://example.com/a": None,
    }

    _, _, scheduler = await run_crawl(config, site)

    monitor = scheduler.monitor
    assert monitor.get_value('crawler_pages_stored_total') == 1
    assert monitor.get_value('crawler_links_enqueued_total') == 1
    assert monitor.get_value('crawler_errors_total', {'error_type': 'fetch'}) == 1


@pytest.mark.asyncio
async def test_unusable_database_path_is_startup_error(config, tmp_path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("")
    config.database.path = str(blocker / "crawler.db")

    scheduler = CrawlerScheduler(config, fetch_worker=FakeFetchWorker({}))
    with pytest.raises(StartupError):
        await scheduler.initialize()
    await scheduler.close()


@pytest.mark.asyncio
async def test_seed_without_links_goes_idle_after_one_fetch(config):
    site = {"https://example.com/": page("Lonely")}

    state, worker, scheduler = await run_crawl(config, site)

    assert state == CrawlState.IDLE
    assert worker.fetched == ["https://example.com/"]
    assert scheduler.get_stats()['pages_stored'] == 1


@pytest.mark.asyncio
async def test_persist_failure_still_enqueues_links(config):
    site = {
        "https://example.com/": page("Home", "/a"),
        "https://example.com/a": page("A"),
    }
    worker = FakeFetchWorker(site)
    scheduler = CrawlerScheduler(config, fetch_worker=worker)
    await scheduler.initialize()

    original_upsert = scheduler.page_store.upsert

    async def failing_upsert(url, *args):
        if url == "https://example.com/":
            raise PersistError("disk I/O error")
        await original_upsert(url, *args)

    try:
        with patch.object(scheduler.page_store, "upsert", side_effect=failing_upsert):
            state = await scheduler.start_crawling()
    finally:
        await scheduler.close()

    assert state == CrawlState.IDLE
    assert sorted(worker.fetched) == sorted(site)
    assert scheduler.get_stats()['persist_errors'] == 1

    database, frontier, pages = await open_stores(config)
    try:
        assert await pages.get_page("https://example.com/") is None
        assert await pages.get_page("https://example.com/a") is not None
        entry = await frontier.get_entry("https://example.com/")
        assert entry.claimed is True
        assert "disk I/O error" in entry.last_error
    finally:
        await database.close()
