"""
Tests for URL normalization, logging helpers, metrics and the CLI entry point.
"""

import json
import logging

import pytest

import main
from sitecrawler.utils.logger import JSONFormatter, get_crawler_logger
from sitecrawler.utils.monitoring import CrawlerMonitor
from sitecrawler.utils.urls import normalize_url


class TestNormalizeUrl:
    def test_lowercases_scheme_and_host(self):
        assert normalize_url("HTTPS://Example.COM/Path?Q=1#Frag") == "https://example.com/Path?Q=1#Frag"

    def test_strips_whitespace(self):
        assert normalize_url("  https://example.com/a \n") == "https://example.com/a"

    def test_relative_url_unchanged(self):
        assert normalize_url("/about") == "/about"


class TestLogging:
    def test_json_formatter_includes_context(self):
        record = logging.LogRecord("sitecrawler", logging.INFO, __file__, 1,
                                   "Crawling %s", ("https://example.com/",), None)
        record.worker_id = "worker-0"
        record.depth = 1

        entry = json.loads(JSONFormatter().format(record))

        assert entry['message'] == "Crawling https://example.com/"
        assert entry['level'] == "INFO"
        assert entry['worker_id'] == "worker-0"
        assert entry['depth'] == 1
        assert 'url' not in entry

    def test_adapter_attaches_url_event(self, caplog):
        log = get_crawler_logger("sitecrawler.test", worker_id="worker-3")

        with caplog.at_level(logging.INFO, logger="sitecrawler.test"):
            log.log_url_event(logging.INFO, "https://example.com/a", "Fetched %s",
                              "https://example.com/a", depth=2)

        record = caplog.records[-1]
        assert record.getMessage() == "Fetched https://example.com/a"
        assert record.worker_id == "worker-3"
        assert record.url == "https://example.com/a"
        assert record.depth == 2
        assert record.event_type == "url_event"


class TestMonitor:
    def test_counters(self):
        monitor = CrawlerMonitor()
        monitor.record_page_fetched(0.2)
        monitor.record_page_stored()
        monitor.record_links_enqueued(3)
        monitor.record_links_enqueued(0)
        monitor.record_error('persist')

        summary = monitor.get_summary()
        assert summary['pages_fetched'] == 1
        assert summary['pages_stored'] == 1
        assert summary['links_enqueued'] == 3
        assert summary['errors']['persist'] == 1
        assert summary['errors']['fetch'] == 0

    def test_frontier_gauges(self):
        monitor = CrawlerMonitor()
        monitor.update_frontier({'total': 5, 'pending': 2, 'claimed': 3, 'failed': 1})

        assert monitor.get_value('crawler_frontier_rows', {'state': 'pending'}) == 2
        assert monitor.get_value('crawler_frontier_rows', {'state': 'claimed'}) == 3

    def test_separate_registries(self):
        first, second = CrawlerMonitor(), CrawlerMonitor()
        first.record_page_stored()

        assert second.get_value('crawler_pages_stored_total') == 0


class TestCli:
    @pytest.fixture(autouse=True)
    def no_dotenv(self, monkeypatch):
        monkeypatch.setattr("sitecrawler.utils.config.load_dotenv", lambda: False)

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main.main(["--version"])

        assert exc_info.value.code == 0
        assert "Site Crawler" in capsys.readouterr().out

    def test_missing_config_file(self, tmp_path):
        assert main.main(["--config", str(tmp_path / "missing.yaml")]) == 1

    def test_missing_target_url_is_startup_failure(self, monkeypatch, tmp_path):
        monkeypatch.delenv("TARGET_URL", raising=False)
        monkeypatch.chdir(tmp_path)

        assert main.main([]) == 1

    @pytest.mark.parametrize("body", [
        "crawler:\n  target_url: https://example.com/\n  max_depth: deep\n",
        "crawler: 5\n",
    ])
    def test_malformed_yaml_values_are_startup_failures(self, tmp_path, capsys, body):
        path = tmp_path / "config.yaml"
        path.write_text(body)

        assert main.main(["--config", str(path), "--dry-run"]) == 1
        assert "Configuration error" in capsys.readouterr().err

    def test_invalid_override_is_startup_failure(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)

        assert main.main(["--target-url", "https://example.com/", "--max-connections", "0"]) == 1
