"""
Site Crawler

A depth-bounded web crawler backed by a durable SQLite frontier.
"""

__version__ = "1.0.0"
