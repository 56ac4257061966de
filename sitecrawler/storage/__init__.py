"""
Storage layer for the site crawler.
"""

from .database import DatabaseManager, ConnectionPool
from .page_store import PageStore, PageRecord

__all__ = ['DatabaseManager', 'ConnectionPool', 'PageStore', 'PageRecord']
