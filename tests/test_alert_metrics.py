from __future__ import annotations

import logging
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from app.services.alert_metrics import (
    MetricProvider,
    build_alert_metrics_catalog,
    get_alert_rule_metrics,
    get_metric_label,
)
from app.services.telemetry import TelemetrySource
from tests.test_utils import FakeClock, T0, create_error_log, create_request_log


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider(db_session, clock):
    return MetricProvider(TelemetrySource(db_session, clock=clock), memory_sampler=lambda: 42.0)


class _BrokenTelemetry:
    def __init__(self) -> None:
        self.rollbacks = 0

    def rollback(self):
        self.rollbacks += 1

    def count_requests(self, window_minutes, min_status=None):
        raise RuntimeError("telemetry unavailable")

    def avg_response_time(self, window_minutes):
        raise RuntimeError("telemetry unavailable")

    def count_errors(self, window_minutes):
        raise RuntimeError("telemetry unavailable")


def test_error_rate_with_no_requests_is_zero(provider):
    assert provider.compute("error_rate") == 0


def test_error_rate_counts_5xx_over_last_ten_minutes(db_session, provider):
    create_request_log(db_session, T0 - timedelta(minutes=1), status_code=200)
    create_request_log(db_session, T0 - timedelta(minutes=2), status_code=404)
    create_request_log(db_session, T0 - timedelta(minutes=3), status_code=500)
    create_request_log(db_session, T0 - timedelta(minutes=9), status_code=503)
    # Outside the window.
    create_request_log(db_session, T0 - timedelta(minutes=11), status_code=500)

    assert provider.compute("error_rate") == pytest.approx(50.0)


def test_response_time_is_mean_over_window(db_session, provider):
    create_request_log(db_session, T0 - timedelta(minutes=1), response_time=100)
    create_request_log(db_session, T0 - timedelta(minutes=5), response_time=300)
    create_request_log(db_session, T0 - timedelta(minutes=20), response_time=5000)

    assert provider.compute("response_time") == pytest.approx(200.0)


def test_response_time_without_data_is_zero(provider):
    assert provider.compute("response_time") == 0


def test_error_count_over_last_ten_minutes(db_session, provider):
    create_error_log(db_session, T0 - timedelta(minutes=2))
    create_error_log(db_session, T0 - timedelta(minutes=8))
    create_error_log(db_session, T0 - timedelta(minutes=15))

    assert provider.compute("error_count") == 2


def test_request_count_over_last_minute(db_session, provider):
    for seconds in (5, 20, 45, 55, 59):
        create_request_log(db_session, T0 - timedelta(seconds=seconds))
    create_request_log(db_session, T0 - timedelta(seconds=90))

    assert provider.compute("request_count") == 5


def test_memory_usage_uses_sampler(provider):
    assert provider.compute("memory_usage") == 42.0


def test_default_memory_sampler_returns_percentage(db_session):
    provider = MetricProvider(TelemetrySource(db_session))
    value = provider.compute("memory_usage")

    assert 0 <= value <= 100


def test_unknown_metric_returns_zero(provider):
    assert provider.compute("disk_usage") == 0


def test_telemetry_failure_degrades_to_zero(caplog):
    telemetry = _BrokenTelemetry()
    provider = MetricProvider(telemetry)

    with caplog.at_level(logging.ERROR, logger="app.services.alert_metrics"):
        for metric in ("error_rate", "response_time", "error_count", "request_count"):
            assert provider.compute(metric) == 0

    assert "Failed to compute alert metric error_rate" in caplog.text
    assert telemetry.rollbacks == 4


class _FlakyTelemetry(TelemetrySource):
    """Fails the first error-log read, as an aborted statement would."""

    def __init__(self, db, clock) -> None:
        super().__init__(db, clock=clock)
        self.rollbacks = 0
        self._failed = False

    def count_errors(self, window_minutes):
        if not self._failed:
            self._failed = True
            raise RuntimeError("current transaction is aborted")
        return super().count_errors(window_minutes)

    def rollback(self):
        # The test session runs inside an outer transaction that must survive.
        self.rollbacks += 1


def test_failed_read_is_rolled_back_and_later_reads_work(db_session, clock):
    create_request_log(db_session, T0 - timedelta(seconds=30))
    create_request_log(db_session, T0 - timedelta(seconds=45))
    create_error_log(db_session, T0 - timedelta(minutes=2))
    telemetry = _FlakyTelemetry(db_session, clock)
    provider = MetricProvider(telemetry, memory_sampler=lambda: 42.0)

    assert provider.compute("error_count") == 0
    assert telemetry.rollbacks == 1

    assert provider.compute("request_count") == 2
    assert provider.compute("error_count") == 1
    assert telemetry.rollbacks == 1


def test_telemetry_rollback_resets_the_session(clock):
    db = MagicMock()

    TelemetrySource(db, clock=clock).rollback()

    db.rollback.assert_called_once_with()


def test_catalog_lists_every_supported_metric():
    catalog = build_alert_metrics_catalog()

    assert {item.metric for item in catalog.items} == get_alert_rule_metrics()
    assert get_alert_rule_metrics() == {
        "error_rate",
        "response_time",
        "error_count",
        "memory_usage",
        "request_count",
    }
    assert get_metric_label("error_rate") == "Error rate (%)"
    assert get_metric_label("something_else") == "something_else"
