"""
test_metrics.py - Tests for in-process metrics and structured logging.
"""

import json
import logging
import pytest

from hybrid_sync.metrics import (
    JSONFormatter,
    MetricsRegistry,
    SyncLogger,
    configure_logging,
    duplicates_adopted_total,
    flush_total,
    get_registry,
    records_pushed_total,
    storage_failures_total,
)


class TestMetricTypes:

    def setup_method(self):
        self.registry = MetricsRegistry(prefix="test")

    def test_counter_per_label_set(self):
        counter = self.registry.counter("events_total", "Events", labels=["kind"])
        counter.inc(kind="a")
        counter.inc(2, kind="a")
        counter.inc(kind="b")

        assert counter.get(kind="a") == 3
        assert counter.get(kind="b") == 1
        assert counter.get(kind="c") == 0

    def test_gauge_set_and_dec(self):
        gauge = self.registry.gauge("depth", "Depth")
        gauge.set(5)
        gauge.dec()
        assert gauge.get() == 4

    def test_histogram_buckets(self):
        histogram = self.registry.histogram("latency", "Latency", buckets=(0.1, 1.0, float("inf")))
        histogram.observe(0.05)
        histogram.observe(0.5)

        exported = {(m.name, m.labels.get("le")): m.value for m in histogram.collect()}
        assert histogram.count() == 2
        assert exported[("test_latency_bucket", "0.1")] == 1
        assert exported[("test_latency_bucket", "1.0")] == 2
        assert exported[("test_latency_sum", None)] == pytest.approx(0.55)

    def test_histogram_timer(self):
        histogram = self.registry.histogram("op", "Op")
        with histogram.time():
            pass
        assert histogram.count() == 1

    def test_registration_is_idempotent(self):
        first = self.registry.counter("same", "Same")
        assert self.registry.counter("same", "Same") is first

    def test_prometheus_export(self):
        counter = self.registry.counter("pushed_total", "Pushed", labels=["collection"])
        counter.inc(3, collection="notes")
        self.registry.gauge("pending", "Pending").set(1)

        lines = self.registry.export_prometheus().splitlines()

        assert 'test_pushed_total{collection="notes"} 3' in lines
        assert "test_pending 1" in lines

    def test_json_export(self):
        self.registry.counter("x_total", "X").inc()
        exported = self.registry.export_json()

        assert exported["metrics"][0]["name"] == "test_x_total"
        assert exported["metrics"][0]["value"] == 1
        assert "exported_at" in exported


class TestSyncLogger:

    def setup_method(self):
        self.sync_log = SyncLogger("hybrid_sync.test")

    def test_flush_completed_updates_counters(self, caplog):
        before = flush_total.get(collection="test-notes", status="success")
        created_before = records_pushed_total.get(collection="test-notes", operation="create")

        with caplog.at_level(logging.INFO, logger="hybrid_sync.test"):
            self.sync_log.flush_completed("test-notes", 2, 1, 0, 0, 12.5)

        assert flush_total.get(collection="test-notes", status="success") == before + 1
        assert records_pushed_total.get(collection="test-notes", operation="create") == created_before + 2
        assert caplog.records[-1].event == "flush_completed"
        assert caplog.records[-1].duration_ms == 12.5

    def test_flush_failed_and_discarded(self):
        failed = flush_total.get(collection="test-decks", status="failed")
        discarded = flush_total.get(collection="test-decks", status="discarded")

        self.sync_log.flush_failed("test-decks", RuntimeError("boom"))
        self.sync_log.flush_discarded("test-decks")

        assert flush_total.get(collection="test-decks", status="failed") == failed + 1
        assert flush_total.get(collection="test-decks", status="discarded") == discarded + 1

    def test_duplicate_and_storage_events(self, caplog):
        adopted = duplicates_adopted_total.get(collection="test-quizzes")
        storage = storage_failures_total.get(key="k", reason="io")

        with caplog.at_level(logging.WARNING, logger="hybrid_sync.test"):
            self.sync_log.duplicate_adopted("test-quizzes", 1, "rid", "title match")
            self.sync_log.storage_failed("k", "io", OSError("disk full"))

        assert duplicates_adopted_total.get(collection="test-quizzes") == adopted + 1
        assert storage_failures_total.get(key="k", reason="io") == storage + 1
        assert [r.levelname for r in caplog.records[-2:]] == ["WARNING", "ERROR"]

    def test_global_registry_holds_sync_metrics(self):
        self.sync_log.flush_failed("test-chats", RuntimeError("x"))
        names = {m.name for m in get_registry().collect_all()}
        assert "hybrid_sync_flush_total" in names


class TestLoggingSetup:

    def setup_method(self):
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level

    def teardown_method(self):
        self.root.handlers = self.saved_handlers
        self.root.setLevel(self.saved_level)

    def test_json_formatter_includes_extra_fields(self):
        record = logging.LogRecord("hybrid_sync.scheduler", logging.INFO, __file__, 1, "Flushed %s", ("notes",), None)
        record.collection = "notes"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "Flushed notes"
        assert data["level"] == "INFO"
        assert data["logger"] == "hybrid_sync.scheduler"
        assert data["collection"] == "notes"

    def test_json_formatter_without_extra(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "m", (), None)
        record.collection = "notes"
        assert "collection" not in json.loads(JSONFormatter(include_extra=False).format(record))

    def test_configure_logging(self, temp_dir):
        configure_logging(level="debug", json_format=True, log_file=f"{temp_dir}/sync.log")

        assert self.root.level == logging.DEBUG
        assert len(self.root.handlers) == 2
        assert all(isinstance(h.formatter, JSONFormatter) for h in self.root.handlers)
        for handler in self.root.handlers:
            handler.close()

    def test_configure_plain_logging(self):
        configure_logging(level="WARNING", json_format=False)

        assert self.root.level == logging.WARNING
        assert not isinstance(self.root.handlers[0].formatter, JSONFormatter)
