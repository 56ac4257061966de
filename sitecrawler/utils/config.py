"""
Configuration management for the site crawler.

Values come from an optional YAML file, then from environment variables
(a local .env file is loaded first), and are validated before use.
"""

import os
import re
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Callable
from dataclasses import dataclass, field, fields

from dotenv import load_dotenv

from ..errors import ConfigError


IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    target_url: str = ""
    max_depth: int = 0
    max_connections: int = 10
    rate_limit: int = 1000  # milliseconds between request starts
    user_agent: str = "My Web Crawler"
    request_timeout: int = 30
    retries: int = 3
    retry_timeout: int = 10000  # milliseconds
    title_selector: str = "title"
    description_selector: str = 'meta[name="description"]'
    claim_retry_attempts: int = 3
    claim_backoff: float = 0.5


@dataclass
class DatabaseConfig:
    """Configuration for the SQLite store and its table layout."""
    path: str = "data/crawler.db"
    pool_size: int = 10
    busy_timeout: int = 5000
    table_name: str = "pages"
    url_column_name: str = "url"
    title_column_name: str = "title"
    description_column_name: str = "description"
    raw_html_column_name: str = "raw_html"
    queue_table_name: str = "queue"
    is_crawled_column_name: str = "is_crawled"
    depth_column_name: str = "depth"

    def identifiers(self) -> Dict[str, str]:
        """Table and column names that end up interpolated into SQL."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name.endswith('_name')
        }


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/crawler.log"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    json: bool = False
    max_file_mb: int = 50
    backup_count: int = 5


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


# Environment variable -> (section, attribute, converter)
ENV_OVERRIDES: Dict[str, tuple] = {
    'TARGET_URL': ('crawler', 'target_url', str),
    'MAX_DEPTH': ('crawler', 'max_depth', int),
    'MAX_CONNECTIONS': ('crawler', 'max_connections', int),
    'RATE_LIMIT': ('crawler', 'rate_limit', int),
    'USER_AGENT': ('crawler', 'user_agent', str),
    'REQUEST_TIMEOUT': ('crawler', 'request_timeout', int),
    'TITLE_SELECTOR': ('crawler', 'title_selector', str),
    'DESCRIPTION_SELECTOR': ('crawler', 'description_selector', str),
    'DB_PATH': ('database', 'path', str),
    'DB_POOL_SIZE': ('database', 'pool_size', int),
    'TABLE_NAME': ('database', 'table_name', str),
    'URL_COLUMN_NAME': ('database', 'url_column_name', str),
    'TITLE_COLUMN_NAME': ('database', 'title_column_name', str),
    'DESCRIPTION_COLUMN_NAME': ('database', 'description_column_name', str),
    'RAW_HTML_COLUMN_NAME': ('database', 'raw_html_column_name', str),
    'QUEUE_TABLE_NAME': ('database', 'queue_table_name', str),
    'IS_CRAWLED_COLUMN_NAME': ('database', 'is_crawled_column_name', str),
    'DEPTH_COLUMN_NAME': ('database', 'depth_column_name', str),
    'LOG_LEVEL': ('logging', 'level', str),
    'LOG_FILE': ('logging', 'file', str),
}


def _coerce(section: str, name: str, expected: type, value: Any) -> Any:
    """Convert a YAML value to the field's type, or raise ConfigError."""
    if expected is bool:
        if isinstance(value, bool):
            return value
    elif expected in (int, float):
        # YAML booleans are ints in Python; never accept them as numbers
        if not isinstance(value, bool):
            try:
                return expected(value)
            except (TypeError, ValueError):
                pass
    elif isinstance(value, expected):
        return value

    raise ConfigError(
        f"Invalid value for {section}.{name}: expected {expected.__name__}, got {value!r}"
    )


def _build_section(cls, data: Optional[Dict[str, Any]], section: str):
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{section}' must be a mapping, got {type(data).__name__}")

    types = {f.name: f.type for f in fields(cls)}
    unknown = set(data) - set(types)
    if unknown:
        raise ConfigError(f"Unknown keys in '{section}' section: {', '.join(sorted(map(str, unknown)))}")
    return cls(**{
        name: _coerce(section, name, types[name], value)
        for name, value in data.items()
    })


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = None,
                 environ: Optional[Dict[str, str]] = None,
                 overrides: Optional[Dict[str, str]] = None):
        self.config_path = Path(config_path) if config_path else None
        self.environ = environ
        # Same keys as ENV_OVERRIDES; applied after the environment
        self.overrides = overrides or {}
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML (if any), then apply environment overrides."""
        if self.environ is None:
            load_dotenv()
            self.environ = dict(os.environ)
        environ = {**self.environ, **self.overrides}

        config_data: Dict[str, Any] = {}
        if self.config_path is not None:
            if not self.config_path.exists():
                raise ConfigError(f"Configuration file not found: {self.config_path}")
            try:
                with open(self.config_path, 'r') as file:
                    config_data = yaml.safe_load(file) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {self.config_path}: {e}") from e
            if not isinstance(config_data, dict):
                raise ConfigError(f"Configuration root must be a mapping: {self.config_path}")

        self._config = Config(
            crawler=_build_section(CrawlerConfig, config_data.get('crawler'), 'crawler'),
            database=_build_section(DatabaseConfig, config_data.get('database'), 'database'),
            logging=_build_section(LoggingConfig, config_data.get('logging'), 'logging'),
            monitoring=_build_section(MonitoringConfig, config_data.get('monitoring'), 'monitoring'),
        )

        self._apply_env_overrides(environ)
        self._validate_config()
        return self._config

    def _apply_env_overrides(self, environ: Dict[str, str]):
        for var, (section, attribute, convert) in ENV_OVERRIDES.items():
            raw = environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                value = convert(raw)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {var}: {raw!r}") from e
            setattr(getattr(self._config, section), attribute, value)

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ConfigError("Configuration not loaded")

        validate_config(self._config)
        logging.getLogger(__name__).debug("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ConfigError("Configuration not loaded. Call load_config() first.")
        return self._config


def validate_config(config: Config):
    """Raise ConfigError for any missing or out-of-range setting."""
    crawler = config.crawler
    database = config.database

    if not crawler.target_url:
        raise ConfigError("A target URL must be provided (crawler.target_url or TARGET_URL)")
    if not crawler.target_url.startswith(('http://', 'https://')):
        raise ConfigError(f"Target URL must be http(s): {crawler.target_url}")
    if not database.path:
        raise ConfigError("A database path must be provided (database.path or DB_PATH)")

    checks: Dict[str, Callable[[], bool]] = {
        "max_depth must be non-negative": lambda: crawler.max_depth >= 0,
        "max_connections must be at least 1": lambda: crawler.max_connections >= 1,
        "rate_limit must be non-negative": lambda: crawler.rate_limit >= 0,
        "request_timeout must be positive": lambda: crawler.request_timeout > 0,
        "retries must be non-negative": lambda: crawler.retries >= 0,
        "retry_timeout must be non-negative": lambda: crawler.retry_timeout >= 0,
        "claim_retry_attempts must be non-negative": lambda: crawler.claim_retry_attempts >= 0,
        "claim_backoff must be non-negative": lambda: crawler.claim_backoff >= 0,
        "pool_size must be at least 1": lambda: database.pool_size >= 1,
        "logging.max_file_mb must be at least 1": lambda: config.logging.max_file_mb >= 1,
        "logging.backup_count must be non-negative": lambda: config.logging.backup_count >= 0,
    }
    for message, check in checks.items():
        if not check():
            raise ConfigError(message)

    for name, value in database.identifiers().items():
        if not IDENTIFIER_PATTERN.match(value or ""):
            raise ConfigError(f"{name} is not a valid SQL identifier: {value!r}")

    if not isinstance(logging.getLevelName(config.logging.level.upper()), int):
        raise ConfigError(f"Unknown log level: {config.logging.level}")


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: Optional[str] = None,
                environ: Optional[Dict[str, str]] = None,
                overrides: Optional[Dict[str, str]] = None) -> Config:
    """Load configuration from file and environment."""
    global config_manager
    config_manager = ConfigManager(config_path, environ, overrides)
    return config_manager.load_config()
