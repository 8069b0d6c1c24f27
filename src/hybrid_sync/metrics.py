"""
metrics.py - Observability for the sync engine.

Provides:
- Prometheus-compatible in-process metrics
- Structured JSON logging
- SyncLogger helpers for the engine's sync events
"""

import time
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List
from contextlib import contextmanager
import os


# =============================================================================
# Metric Types
# =============================================================================

@dataclass
class MetricValue:
    """Single metric value with labels."""
    name: str
    value: float
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


# =============================================================================
# Metric Collectors
# =============================================================================

class _LabelledMetric:
    def __init__(self, name: str, help_text: str, labels: List[str] = None):
        self.name = name
        self.help = help_text
        self.labels = labels or []
        self._lock = threading.Lock()

    def _label_key(self, label_values: dict) -> tuple:
        return tuple(str(label_values.get(l, "")) for l in self.labels)


class Counter(_LabelledMetric):
    """Prometheus-style counter metric."""

    def __init__(self, name: str, help_text: str, labels: List[str] = None):
        super().__init__(name, help_text, labels)
        self._values: Dict[tuple, float] = {}

    def inc(self, value: float = 1, **label_values) -> None:
        """Increment counter."""
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value

    def get(self, **label_values) -> float:
        """Get current value."""
        return self._values.get(self._label_key(label_values), 0)

    def collect(self) -> List[MetricValue]:
        """Collect all values for export."""
        with self._lock:
            return [
                MetricValue(name=self.name, value=value, labels=dict(zip(self.labels, key)))
                for key, value in self._values.items()
            ]


class Gauge(Counter):
    """Prometheus-style gauge metric."""

    def set(self, value: float, **label_values) -> None:
        """Set gauge value."""
        key = self._label_key(label_values)
        with self._lock:
            self._values[key] = value

    def dec(self, value: float = 1, **label_values) -> None:
        """Decrement gauge."""
        self.inc(-value, **label_values)


class Histogram(_LabelledMetric):
    """Prometheus-style histogram metric."""

    DEFAULT_BUCKETS = (
        0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5,
        1.0, 2.5, 5.0, 10.0, float('inf')
    )

    def __init__(
        self,
        name: str,
        help_text: str,
        labels: List[str] = None,
        buckets: tuple = None
    ):
        super().__init__(name, help_text, labels)
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._values: Dict[tuple, dict] = {}

    def observe(self, value: float, **label_values) -> None:
        """Observe a value."""
        key = self._label_key(label_values)

        with self._lock:
            if key not in self._values:
                self._values[key] = {
                    "count": 0,
                    "sum": 0.0,
                    "buckets": {b: 0 for b in self.buckets}
                }

            data = self._values[key]
            data["count"] += 1
            data["sum"] += value

            for bucket in self.buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    @contextmanager
    def time(self, **label_values):
        """Context manager to time an operation."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start, **label_values)

    def count(self, **label_values) -> int:
        data = self._values.get(self._label_key(label_values))
        return data["count"] if data else 0

    def collect(self) -> List[MetricValue]:
        """Collect all values for export."""
        results = []

        with self._lock:
            for key, data in self._values.items():
                labels = dict(zip(self.labels, key))
                results.append(MetricValue(name=f"{self.name}_sum", value=data["sum"], labels=labels))
                results.append(MetricValue(name=f"{self.name}_count", value=data["count"], labels=labels))
                for le, count in data["buckets"].items():
                    results.append(MetricValue(
                        name=f"{self.name}_bucket",
                        value=count,
                        labels={**labels, "le": str(le)}
                    ))

        return results


# =============================================================================
# Metrics Registry
# =============================================================================

class MetricsRegistry:
    """Registry of named metrics sharing one prefix."""

    def __init__(self, prefix: str = "hybrid_sync"):
        self.prefix = prefix
        self._metrics: Dict[str, Counter | Gauge | Histogram] = {}
        self._lock = threading.Lock()

    def _register(self, cls, name: str, *args):
        full_name = f"{self.prefix}_{name}"
        with self._lock:
            if full_name not in self._metrics:
                self._metrics[full_name] = cls(full_name, *args)
            return self._metrics[full_name]

    def counter(self, name: str, help_text: str, labels: List[str] = None) -> Counter:
        """Register or get a counter metric."""
        return self._register(Counter, name, help_text, labels)

    def gauge(self, name: str, help_text: str, labels: List[str] = None) -> Gauge:
        """Register or get a gauge metric."""
        return self._register(Gauge, name, help_text, labels)

    def histogram(
        self,
        name: str,
        help_text: str,
        labels: List[str] = None,
        buckets: tuple = None
    ) -> Histogram:
        """Register or get a histogram metric."""
        return self._register(Histogram, name, help_text, labels, buckets)

    def collect_all(self) -> List[MetricValue]:
        """Collect all metrics."""
        results = []
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            results.extend(metric.collect())
        return results

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        for metric in self.collect_all():
            if metric.labels:
                label_str = ",".join(
                    f'{k}="{v}"' for k, v in metric.labels.items()
                )
                lines.append(f"{metric.name}{{{label_str}}} {metric.value}")
            else:
                lines.append(f"{metric.name} {metric.value}")

        return "\n".join(lines)

    def export_json(self) -> dict:
        """Export metrics as JSON."""
        return {
            "metrics": [
                {
                    "name": m.name,
                    "value": m.value,
                    "labels": m.labels,
                    "timestamp": m.timestamp
                }
                for m in self.collect_all()
            ],
            "exported_at": time.time()
        }


# =============================================================================
# Pre-defined Sync Metrics
# =============================================================================

_registry = MetricsRegistry()

flush_total = _registry.counter(
    "flush_total",
    "Collection flushes by outcome",
    labels=["collection", "status"]
)

records_pushed_total = _registry.counter(
    "records_pushed_total",
    "Records written to the remote service",
    labels=["collection", "operation"]
)

flush_latency_seconds = _registry.histogram(
    "flush_latency_seconds",
    "Wall time of one collection flush",
    labels=["collection"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf'))
)

merge_records_total = _registry.counter(
    "merge_records_total",
    "Remote records processed by merge, by outcome",
    labels=["collection", "outcome"]
)

duplicates_adopted_total = _registry.counter(
    "duplicates_adopted_total",
    "Remote records matched to a local record by the duplicate heuristic",
    labels=["collection"]
)

storage_failures_total = _registry.counter(
    "storage_failures_total",
    "Local store writes or reads that failed",
    labels=["key", "reason"]
)

pending_collections = _registry.gauge(
    "pending_collections",
    "Collections with local changes not yet confirmed remotely"
)

last_sync_timestamp = _registry.gauge(
    "last_sync_timestamp",
    "Timestamp of last successful flush",
    labels=["collection"]
)


def get_registry() -> MetricsRegistry:
    """Get the global metrics registry."""
    return _registry


# =============================================================================
# Structured Logging
# =============================================================================

_STANDARD_ATTRS = frozenset((
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName'
))


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra
        self._hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "hostname": self._hostname
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key not in _STANDARD_ATTRS:
                    log_data[key] = value

        return json.dumps(log_data, default=str)


class SyncLogger:
    """
    Structured logger for sync operations.

    Each helper logs one event with machine-readable extra fields
    and updates the matching metrics.
    """

    def __init__(self, name: str = "hybrid_sync"):
        self._logger = logging.getLogger(name)

    def flush_started(self, collection: str, creates: int, updates: int, deletes: int) -> None:
        self._logger.debug(
            f"Flushing {collection}: create={creates}, update={updates}, delete={deletes}",
            extra={
                "event": "flush_started",
                "collection": collection,
                "creates": creates,
                "updates": updates,
                "deletes": deletes,
            }
        )

    def flush_completed(
        self,
        collection: str,
        created: int,
        updated: int,
        deleted: int,
        rejected: int,
        duration_ms: float
    ) -> None:
        """Log a successful flush of one collection."""
        self._logger.info(
            f"Flushed {collection}: created={created}, updated={updated}, "
            f"deleted={deleted}, rejected={rejected}",
            extra={
                "event": "flush_completed",
                "collection": collection,
                "created": created,
                "updated": updated,
                "deleted": deleted,
                "rejected": rejected,
                "duration_ms": duration_ms,
            }
        )
        flush_total.inc(1, collection=collection, status="success")
        records_pushed_total.inc(created, collection=collection, operation="create")
        records_pushed_total.inc(updated, collection=collection, operation="update")
        records_pushed_total.inc(deleted, collection=collection, operation="delete")
        last_sync_timestamp.set(time.time(), collection=collection)

    def flush_failed(self, collection: str, error: Exception) -> None:
        """Log a flush that left the collection pending."""
        self._logger.warning(
            f"Flush of {collection} failed, will retry: {error}",
            extra={
                "event": "flush_failed",
                "collection": collection,
                "error": str(error),
                "error_type": type(error).__name__,
            }
        )
        flush_total.inc(1, collection=collection, status="failed")

    def flush_discarded(self, collection: str) -> None:
        self._logger.info(
            f"Discarding late flush result for {collection} (principal changed)",
            extra={"event": "flush_discarded", "collection": collection}
        )
        flush_total.inc(1, collection=collection, status="discarded")

    def record_rejected(self, collection: str, local_id, error: Exception) -> None:
        """Log a record the remote will never accept."""
        self._logger.error(
            f"Remote rejected record {local_id} in {collection}: {error}",
            extra={
                "event": "record_rejected",
                "collection": collection,
                "local_id": local_id,
                "error": str(error),
            }
        )
        records_pushed_total.inc(1, collection=collection, operation="rejected")

    def auth_failed(self, principal_id: str, error: Exception) -> None:
        self._logger.error(
            f"Remote rejected credentials for principal {principal_id}; "
            f"sync suspended until re-authentication: {error}",
            extra={
                "event": "auth_failed",
                "principal_id": principal_id,
                "error": str(error),
            }
        )

    def merge_completed(
        self,
        collection: str,
        added: int,
        updated: int,
        adopted: int,
        skipped: int
    ) -> None:
        """Log the outcome of merging a remote snapshot."""
        self._logger.info(
            f"Merged {collection}: added={added}, updated={updated}, "
            f"adopted={adopted}, skipped={skipped}",
            extra={
                "event": "merge_completed",
                "collection": collection,
                "added": added,
                "updated": updated,
                "adopted": adopted,
                "skipped": skipped,
            }
        )
        merge_records_total.inc(added, collection=collection, outcome="added")
        merge_records_total.inc(updated, collection=collection, outcome="updated")
        merge_records_total.inc(adopted, collection=collection, outcome="adopted")
        merge_records_total.inc(skipped, collection=collection, outcome="skipped")

    def duplicate_adopted(self, collection: str, local_id, remote_id: str, reason: str) -> None:
        """Log that the duplicate heuristic matched two records."""
        self._logger.warning(
            f"Treating remote record {remote_id} as duplicate of local record "
            f"{local_id} in {collection} ({reason})",
            extra={
                "event": "duplicate_adopted",
                "collection": collection,
                "local_id": local_id,
                "remote_id": remote_id,
                "reason": reason,
            }
        )
        duplicates_adopted_total.inc(1, collection=collection)

    def storage_failed(self, key: str, reason: str, error: Exception) -> None:
        self._logger.error(
            f"Local store failure on {key} ({reason}): {error}",
            extra={
                "event": "storage_failed",
                "key": key,
                "reason": reason,
                "error": str(error),
            }
        )
        storage_failures_total.inc(1, key=key, reason=reason)


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: str = None
) -> None:
    """
    Configure logging for production.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON formatting
        log_file: Optional log file path
    """
    handlers = []

    console = logging.StreamHandler()
    if json_format:
        console.setFormatter(JSONFormatter())
    else:
        console.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
    handlers.append(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=handlers,
        force=True
    )
