"""
Monitoring and metrics collection for the site crawler.
"""

import time
import logging
from typing import Dict, Any, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class CrawlerMonitor:
    """
    Prometheus-backed crawl metrics.

    Each monitor owns its own registry so several crawls (or tests) can run
    in one process without metric name clashes.
    """

    def __init__(self, enable_server: bool = False, port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.enable_server = enable_server
        self.port = port
        self.start_time = time.time()
        self.registry = CollectorRegistry()

        self.pages_fetched = Counter(
            'crawler_pages_fetched_total',
            'Pages fetched successfully',
            registry=self.registry
        )
        self.pages_stored = Counter(
            'crawler_pages_stored_total',
            'Pages written to the page store',
            registry=self.registry
        )
        self.links_enqueued = Counter(
            'crawler_links_enqueued_total',
            'New frontier rows created from extracted links',
            registry=self.registry
        )
        self.errors = Counter(
            'crawler_errors_total',
            'Crawl errors by type',
            ['error_type'],
            registry=self.registry
        )
        self.fetch_duration = Histogram(
            'crawler_fetch_duration_seconds',
            'Fetch worker duration per task',
            registry=self.registry
        )
        self.in_flight = Gauge(
            'crawler_in_flight_tasks',
            'Workers currently claiming or processing a task',
            registry=self.registry
        )
        self.frontier_rows = Gauge(
            'crawler_frontier_rows',
            'Frontier rows by state',
            ['state'],
            registry=self.registry
        )

    def start_server(self):
        """Start the Prometheus HTTP exporter if enabled."""
        if not self.enable_server:
            return

        try:
            start_http_server(self.port, registry=self.registry)
            self.logger.info("Prometheus metrics server started on port %d", self.port)
        except OSError as e:
            self.logger.error("Failed to start Prometheus server: %s", e)

    def record_page_fetched(self, duration: float):
        self.pages_fetched.inc()
        self.fetch_duration.observe(duration)

    def record_page_stored(self):
        self.pages_stored.inc()

    def record_links_enqueued(self, count: int):
        if count > 0:
            self.links_enqueued.inc(count)

    def record_error(self, error_type: str):
        self.errors.labels(error_type=error_type).inc()

    def update_in_flight(self, count: int):
        self.in_flight.set(count)

    def update_frontier(self, stats: Dict[str, int]):
        for state in ('pending', 'claimed', 'failed'):
            if state in stats:
                self.frontier_rows.labels(state=state).set(stats[state])

    def get_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Read a sample value from this monitor's registry."""
        value = self.registry.get_sample_value(name, labels or {})
        return value or 0.0

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of crawl metrics."""
        runtime = time.time() - self.start_time
        fetched = self.get_value('crawler_pages_fetched_total')
        errors = {
            error_type: self.get_value('crawler_errors_total', {'error_type': error_type})
            for error_type in ('claim', 'fetch', 'persist')
        }

        return {
            'runtime_seconds': runtime,
            'pages_fetched': fetched,
            'pages_stored': self.get_value('crawler_pages_stored_total'),
            'links_enqueued': self.get_value('crawler_links_enqueued_total'),
            'errors': errors,
            'pages_per_minute': fetched / (runtime / 60) if runtime > 0 else 0,
        }
