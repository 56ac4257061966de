#!/usr/bin/env python3
"""
Main entry point for the site crawler.
"""

import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from sitecrawler import __version__
from sitecrawler.crawler.scheduler import CrawlerScheduler
from sitecrawler.errors import StartupError, DatabaseError
from sitecrawler.utils.config import load_config, Config
from sitecrawler.utils.logger import setup_logging, log_system_info


class CrawlerApp:
    """Main application class for the site crawler."""

    def __init__(self):
        self.scheduler: Optional[CrawlerScheduler] = None
        self.logger = logging.getLogger(__name__)
        self._shutdown_event: Optional[asyncio.Event] = None

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info("Received signal %s, initiating shutdown...", signum)
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except NotImplementedError:
                signal.signal(signum, lambda s, frame: signal_handler(s))

    async def run(self, config: Config, max_pages: Optional[int] = None,
                  max_duration: Optional[int] = None, dry_run: bool = False,
                  log_json: bool = False) -> int:
        """Run the crawler. Returns the process exit code."""
        self._shutdown_event = asyncio.Event()
        setup_logging(config.logging, enable_json=log_json or config.logging.json)
        log_system_info()
        self.setup_signal_handlers()

        self.logger.info("=== SITE CRAWLER STARTING ===")
        self.logger.info("Target URL: %s", config.crawler.target_url)
        self.logger.info("Max depth: %d", config.crawler.max_depth)
        self.logger.info("Max connections: %d", config.crawler.max_connections)
        self.logger.info("Rate limit: %d ms", config.crawler.rate_limit)
        self.logger.info("Database: %s", config.database.path)

        try:
            if dry_run:
                self.logger.info("DRY RUN MODE: No actual crawling will be performed")
                return await self._dry_run(config)

            self.scheduler = CrawlerScheduler(config)
            await self.scheduler.initialize()

            crawl_task = asyncio.create_task(
                self.scheduler.start_crawling(max_pages, max_duration)
            )
            shutdown_task = asyncio.create_task(self._shutdown_event.wait())

            done, _ = await asyncio.wait(
                [crawl_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED
            )

            if shutdown_task in done:
                self.logger.info("Shutdown requested, letting in-flight pages finish...")
                await self.scheduler.stop_crawling()
            else:
                shutdown_task.cancel()

            state = await crawl_task
            self.logger.info("Crawl finished in state %s", state.name)
            return 0

        except StartupError as e:
            self.logger.error("Startup failed: %s", e)
            return 1

        finally:
            if self.scheduler:
                await self.scheduler.close()
            self.logger.info("=== SITE CRAWLER FINISHED ===")

    async def _dry_run(self, config: Config) -> int:
        """Check the database and one fetch of the target URL without crawling."""
        from sitecrawler.storage.database import DatabaseManager
        from sitecrawler.crawler.fetcher import WebFetcher

        self.logger.info("Testing database configuration...")
        db_manager = DatabaseManager(config.database)
        try:
            await db_manager.initialize()
            self.logger.info("Database initialization successful: %s", await db_manager.get_stats())
        except DatabaseError as e:
            self.logger.error("Database initialization failed: %s", e)
            return 1
        finally:
            await db_manager.close()

        self.logger.info("Testing fetcher configuration...")
        async with WebFetcher(
            user_agent=config.crawler.user_agent,
            request_timeout=config.crawler.request_timeout,
            max_concurrent_requests=1,
            rate_limit=0,
            retries=0
        ) as fetcher:
            result = await fetcher.fetch(config.crawler.target_url)
            if result.error:
                self.logger.warning("Test fetch failed: %s", result.error)
            else:
                self.logger.info("Test fetch successful: %d", result.status_code)

        self.logger.info("Dry run completed")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Depth-bounded site crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --config config.yaml                  # Run with a config file
  TARGET_URL=https://example.com python main.py        # Configure from the environment
  python main.py --target-url https://example.com --max-depth 2
  python main.py --max-pages 1000                      # Stop after 1000 pages
  python main.py --dry-run                             # Test configuration only
        """
    )

    parser.add_argument('--config', help='Path to a YAML configuration file')
    parser.add_argument('--target-url', help='Seed URL; also the crawl scope prefix')
    parser.add_argument('--max-depth', type=int, help='Maximum link depth from the seed')
    parser.add_argument('--max-connections', type=int, help='Number of concurrent fetch workers')
    parser.add_argument('--max-pages', type=int, help='Stop after claiming this many pages')
    parser.add_argument('--max-duration', type=int, help='Stop after this many seconds')
    parser.add_argument('--log-json', action='store_true', help='Emit JSON formatted logs')
    parser.add_argument('--dry-run', action='store_true',
                        help='Test configuration without actually crawling')
    parser.add_argument('--version', action='version', version=f'Site Crawler {__version__}')

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.config and not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.", file=sys.stderr)
        return 1

    overrides = {}
    if args.target_url:
        overrides['TARGET_URL'] = args.target_url
    if args.max_depth is not None:
        overrides['MAX_DEPTH'] = str(args.max_depth)
    if args.max_connections is not None:
        overrides['MAX_CONNECTIONS'] = str(args.max_connections)

    try:
        config = load_config(args.config, overrides=overrides)
    except StartupError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    app = CrawlerApp()
    try:
        return asyncio.run(app.run(
            config,
            max_pages=args.max_pages,
            max_duration=args.max_duration,
            dry_run=args.dry_run,
            log_json=args.log_json
        ))
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
