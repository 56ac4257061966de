"""
Test configuration and fixtures for crawler tests
"""

import pytest
import pytest_asyncio

from sitecrawler.crawler.frontier import FrontierStore
from sitecrawler.storage.database import DatabaseManager
from sitecrawler.storage.page_store import PageStore
from sitecrawler.utils.config import Config, CrawlerConfig, DatabaseConfig


TARGET_URL = "https://example.com/"


@pytest.fixture
def temp_db_path(tmp_path):
    """Create a temporary database path for testing"""
    return str(tmp_path / "test_crawler.db")


@pytest.fixture
def config(temp_db_path, tmp_path):
    """Crawler configuration pointing at a temporary database, with no delays"""
    cfg = Config(
        crawler=CrawlerConfig(
            target_url=TARGET_URL,
            max_depth=1,
            max_connections=3,
            rate_limit=0,
            retries=0,
            retry_timeout=0,
            claim_backoff=0,
        ),
        database=DatabaseConfig(path=temp_db_path, pool_size=4),
    )
    cfg.logging.file = str(tmp_path / "logs" / "crawler.log")
    return cfg


@pytest_asyncio.fixture
async def database(config):
    """Initialized database; connections are released after the test"""
    db = DatabaseManager(config.database)
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def frontier(database):
    return FrontierStore(database)


@pytest.fixture
def page_store(database):
    return PageStore(database)
