"""
Logging setup for the site crawler.

Records go to stdout, to a rotating crawl log and to a rotating errors.log
kept next to it. Worker loggers carry a worker_id, and per-URL events also
carry the url and depth, so the JSON output can be grepped by page.
"""

import json
import logging
import logging.handlers
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import psutil

from .config import LoggingConfig


# Extra record attributes copied into JSON output when present
CONTEXT_FIELDS = ('worker_id', 'url', 'depth', 'event_type')

# Library loggers that flood DEBUG output during a crawl
NOISY_LOGGERS = ('aiohttp.access', 'aiosqlite')

LIBRARY_LEVELS = {
    'aiohttp': logging.WARNING,
    'aiosqlite': logging.WARNING,
    'asyncio': logging.WARNING,
    'urllib3': logging.WARNING,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """
    Adapter binding crawl context (usually worker_id) to every record.

    Per-call `extra` values are merged over the bound context instead of
    replacing it.
    """

    def __init__(self, logger: logging.Logger, context: Optional[Dict[str, Any]] = None):
        super().__init__(logger, context or {})

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **(kwargs.get('extra') or {})}
        return msg, kwargs

    def log_url_event(self, level: int, url: str, message: str, *args,
                      depth: Optional[int] = None, **kwargs):
        """Log an event about one page, tagging the record with its url and depth."""
        extra = {'url': url, 'event_type': 'url_event'}
        if depth is not None:
            extra['depth'] = depth
        extra.update(kwargs.pop('extra', None) or {})
        self.log(level, message, *args, extra=extra, **kwargs)


class NoiseFilter(logging.Filter):
    """Drops records from chatty library loggers."""

    def __init__(self, prefixes: Iterable[str] = NOISY_LOGGERS):
        super().__init__()
        self.prefixes = tuple(prefixes)

    def filter(self, record: logging.LogRecord) -> bool:
        return not record.name.startswith(self.prefixes)


def _rotating_handler(path: Path, level: int, max_bytes: int, backup_count: int,
                      formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(config: LoggingConfig, enable_json: bool = False,
                  quiet_libraries: bool = True) -> logging.Logger:
    """
    Configure the root logger for a crawl run.

    Args:
        config: Logging section of the crawler configuration
        enable_json: Emit JSON lines instead of `config.format`
        quiet_libraries: Filter aiohttp access and aiosqlite records

    Returns:
        The root logger
    """
    level = logging.getLevelName(config.level.upper())
    log_file = Path(config.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    formatter = JSONFormatter() if enable_json else logging.Formatter(config.format)
    max_bytes = config.max_file_mb * 1024 * 1024

    handlers = [
        logging.StreamHandler(sys.stdout),
        _rotating_handler(log_file, logging.DEBUG, max_bytes, config.backup_count, formatter),
        _rotating_handler(log_file.with_name('errors.log'), logging.ERROR,
                          max_bytes, config.backup_count, formatter),
    ]
    handlers[0].setLevel(level)
    handlers[0].setFormatter(formatter)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)

    for handler in handlers:
        if quiet_libraries:
            handler.addFilter(NoiseFilter())
        root.addHandler(handler)

    for name, library_level in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)

    root.info("Logging to %s at level %s", log_file, config.level.upper())
    return root


def get_crawler_logger(name: str, **context) -> CrawlerLogAdapter:
    """Return a logger that stamps `context` (e.g. worker_id) onto every record."""
    return CrawlerLogAdapter(logging.getLogger(name), context)


def log_system_info():
    """Log host details at startup."""
    logger = logging.getLogger(__name__)
    memory = psutil.virtual_memory()

    logger.info("Host: %s (%s), Python %s",
                platform.node(), platform.platform(), platform.python_version())
    logger.info("CPUs: %s, memory: %.1f GB total / %.1f GB available",
                psutil.cpu_count(), memory.total / 1024**3, memory.available / 1024**3)
