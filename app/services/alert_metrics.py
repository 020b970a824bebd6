from __future__ import annotations

import logging
from typing import Callable, Set

import psutil

from app.schemas.alert_metrics import AlertMetricMetadata, AlertMetricsResponse
from app.services.telemetry import TelemetrySource


logger = logging.getLogger(__name__)


ERROR_WINDOW_MINUTES = 10
REQUEST_RATE_WINDOW_MINUTES = 1


def build_alert_metrics_catalog() -> AlertMetricsResponse:
    items: list[AlertMetricMetadata] = [
        AlertMetricMetadata(
            metric="error_rate",
            label="Error rate (%)",
            description="Share of requests answered with a 5xx status over the last 10 minutes.",
            unit="%",
            window_minutes=ERROR_WINDOW_MINUTES,
        ),
        AlertMetricMetadata(
            metric="response_time",
            label="Average response time (ms)",
            description="Mean response latency of logged requests over the last 10 minutes.",
            unit="ms",
            window_minutes=ERROR_WINDOW_MINUTES,
        ),
        AlertMetricMetadata(
            metric="error_count",
            label="Error count",
            description="Number of error log entries over the last 10 minutes.",
            window_minutes=ERROR_WINDOW_MINUTES,
        ),
        AlertMetricMetadata(
            metric="memory_usage",
            label="Memory usage (%)",
            description="Resident memory of the backend process as a share of system memory.",
            unit="%",
        ),
        AlertMetricMetadata(
            metric="request_count",
            label="Requests per minute",
            description="Number of logged requests over the last minute.",
            window_minutes=REQUEST_RATE_WINDOW_MINUTES,
        ),
    ]
    return AlertMetricsResponse(items=items)


def get_alert_rule_metrics() -> Set[str]:
    """Return the set of metric names an alert rule may reference."""
    catalog = build_alert_metrics_catalog()
    return {item.metric for item in catalog.items}


def get_metric_label(metric: str) -> str:
    for item in build_alert_metrics_catalog().items:
        if item.metric == metric:
            return item.label
    return metric


def sample_memory_usage() -> float:
    return float(round(psutil.Process().memory_percent()))


class MetricProvider:
    """Computes the current value of a named alert metric.

    ``compute`` never raises: unknown metrics and telemetry failures both
    yield ``0`` so one bad read cannot abort an evaluation cycle.
    """

    def __init__(
        self,
        telemetry: TelemetrySource,
        memory_sampler: Callable[[], float] = sample_memory_usage,
    ) -> None:
        self._telemetry = telemetry
        self._memory_sampler = memory_sampler
        self._computations: dict[str, Callable[[], float]] = {
            "error_rate": self._error_rate,
            "response_time": self._response_time,
            "error_count": self._error_count,
            "memory_usage": self._memory_usage,
            "request_count": self._request_count,
        }

    def compute(self, metric: str) -> float:
        computation = self._computations.get(metric)
        if computation is None:
            logger.warning("Unknown alert metric %r, using 0", metric)
            return 0.0

        try:
            return computation()
        except Exception:
            logger.exception("Failed to compute alert metric %s", metric)
            self._recover()
            return 0.0

    def _recover(self) -> None:
        try:
            self._telemetry.rollback()
        except Exception:
            logger.exception("Rollback after failed metric read also failed")

    def _error_rate(self) -> float:
        total = self._telemetry.count_requests(ERROR_WINDOW_MINUTES)
        if total == 0:
            return 0.0
        errors = self._telemetry.count_requests(ERROR_WINDOW_MINUTES, min_status=500)
        return errors * 100.0 / total

    def _response_time(self) -> float:
        return self._telemetry.avg_response_time(ERROR_WINDOW_MINUTES)

    def _error_count(self) -> float:
        return float(self._telemetry.count_errors(ERROR_WINDOW_MINUTES))

    def _memory_usage(self) -> float:
        return self._memory_sampler()

    def _request_count(self) -> float:
        return float(self._telemetry.count_requests(REQUEST_RATE_WINDOW_MINUTES))
