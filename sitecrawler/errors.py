"""
Exception hierarchy for the crawler.

Only StartupError aborts a crawl; every other error is recovered per attempt
or per task by the scheduler.
"""


class CrawlerError(Exception):
    """Base class for all crawler errors."""
    pass


class StartupError(CrawlerError):
    """Fatal error raised before seeding (bad configuration, unreachable storage)."""
    pass


class ConfigError(StartupError):
    """Invalid or missing configuration."""
    pass


class DatabaseError(CrawlerError):
    """Failure of the storage handle itself."""
    pass


class ClaimError(CrawlerError):
    """Transient storage failure while claiming frontier work."""
    pass


class FetchError(CrawlerError):
    """Network or parse failure for a single URL."""
    pass


class PersistError(CrawlerError):
    """Failure upserting a page or enqueueing links."""
    pass
