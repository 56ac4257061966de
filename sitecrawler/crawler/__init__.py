"""
Crawler core components.
"""

from .frontier import FrontierStore, FrontierEntry, CrawlTask
from .fetcher import WebFetcher, FetchResult
from .parser import ContentParser, LinkExtractor
from .worker import FetchWorker, PageResult
from .scheduler import CrawlerScheduler, CrawlState

__all__ = [
    'FrontierStore', 'FrontierEntry', 'CrawlTask',
    'WebFetcher', 'FetchResult',
    'ContentParser', 'LinkExtractor',
    'FetchWorker', 'PageResult',
    'CrawlerScheduler', 'CrawlState'
]
