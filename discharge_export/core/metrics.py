"""Prometheus metrics for the export pipeline."""

from typing import Optional

from prometheus_client import Counter, Histogram

from discharge_export.core.logging import get_logger

logger = get_logger(__name__)


def _safe_counter(*args, **kwargs):
    try:
        return Counter(*args, **kwargs)
    except ValueError:
        # Already registered (module re-imported in tests); return a no-op
        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def inc(self, *args, **kwargs):
                pass

        return DummyMetric()


def _safe_histogram(*args, **kwargs):
    try:
        return Histogram(*args, **kwargs)
    except ValueError:

        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def observe(self, *args, **kwargs):
                pass

        return DummyMetric()


exports_total = _safe_counter(
    "discharge_exports_total",
    "Export jobs reaching a terminal state",
    ["outcome"],  # success, duplicate, failed
)

export_failures_total = _safe_counter(
    "discharge_export_failures_total",
    "Export failures by classified cause",
    ["failure_class"],
)

export_step_duration_seconds = _safe_histogram(
    "discharge_export_step_duration_seconds",
    "Time spent in each export pipeline state",
    ["step"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)

publish_failed_after_write_total = _safe_counter(
    "discharge_export_publish_failed_after_write_total",
    "Exports durably written whose notification could not be published",
)


def record_export_outcome(outcome: str, failure_class: Optional[str] = None) -> None:
    """Record a terminal export outcome"""
    exports_total.labels(outcome=outcome).inc()
    if failure_class:
        export_failures_total.labels(failure_class=failure_class).inc()
