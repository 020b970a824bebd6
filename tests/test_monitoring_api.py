from __future__ import annotations

from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from app.core.db import get_db
from app.main import app
from app.models.models import AlertHistory, AlertRule
from app.services.alert_checker import AlertChecker, get_alert_checker
from app.services.alert_history import HistoryRecorder
from tests.test_utils import FakeClock, T0, build_dispatcher, create_request_log, create_rule, unreachable


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def checker(db_session, clock):
    return AlertChecker(
        session_factory=lambda: db_session,
        dispatcher=build_dispatcher(unreachable, clock=clock),
        clock=clock,
    )


@pytest.fixture
def client(db_session, checker):
    def _get_db_override():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db_override
    app.dependency_overrides[get_alert_checker] = lambda: checker
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def test_create_alert_rule_valid(client, db_session):
    payload = {
        "name": "High error rate",
        "metric": "error_rate",
        "operator": ">",
        "threshold": 5,
        "webhook_url": "https://hooks.example.com/T1",
    }

    resp = client.post("/api/v1/monitoring/alerts", json=payload)
    assert resp.status_code == 201, resp.text
    data = resp.json()

    assert data["id"] is not None
    assert data["name"] == payload["name"]
    assert data["metric"] == "error_rate"
    assert data["operator"] == ">"
    assert data["threshold"] == 5
    assert data["webhook_url"] == payload["webhook_url"]
    assert data["enabled"] is True
    assert data["last_triggered_at"] is None

    rule = db_session.query(AlertRule).filter(AlertRule.id == data["id"]).first()
    assert rule is not None
    assert rule.metric == "error_rate"

    resp_list = client.get("/api/v1/monitoring/alerts")
    assert resp_list.status_code == 200, resp_list.text
    ids = {item["id"] for item in resp_list.json()["items"]}
    assert data["id"] in ids


@pytest.mark.parametrize(
    "field, value",
    [
        ("metric", "cpu_temperature"),
        ("operator", "!="),
        ("name", "   "),
        ("webhook_url", "ftp://example.com"),
    ],
)
def test_create_alert_rule_rejects_invalid_values(client, field, value):
    payload = {"name": "Invalid rule", "metric": "error_count", "operator": ">=", "threshold": 1}
    payload[field] = value

    resp = client.post("/api/v1/monitoring/alerts", json=payload)
    assert resp.status_code == 422, resp.text


def test_update_alert_rule(client, db_session):
    rule = create_rule(db_session, name="Before", metric="error_count", threshold=3)
    db_session.commit()

    resp = client.patch(
        f"/api/v1/monitoring/alerts/{rule.id}",
        json={"name": "After", "threshold": 10, "enabled": False},
    )
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["name"] == "After"
    assert data["threshold"] == 10
    assert data["enabled"] is False
    assert data["metric"] == "error_count"


def test_update_alert_rule_rejects_invalid_operator(client, db_session):
    rule = create_rule(db_session)
    db_session.commit()

    resp = client.patch(f"/api/v1/monitoring/alerts/{rule.id}", json={"operator": "=>"})
    assert resp.status_code == 422, resp.text


@pytest.mark.parametrize("field", ["name", "metric", "operator", "threshold", "enabled"])
def test_update_alert_rule_rejects_null_for_required_fields(client, db_session, field):
    rule = create_rule(db_session, name="Keep me", metric="error_count", threshold=3)
    db_session.commit()

    resp = client.patch(f"/api/v1/monitoring/alerts/{rule.id}", json={field: None})
    assert resp.status_code == 422, resp.text

    db_session.refresh(rule)
    assert rule.name == "Keep me"
    assert rule.metric == "error_count"
    assert rule.threshold == 3
    assert rule.enabled is True


def test_update_alert_rule_rejects_blank_name(client, db_session):
    rule = create_rule(db_session, name="Keep me")
    db_session.commit()

    resp = client.patch(f"/api/v1/monitoring/alerts/{rule.id}", json={"name": "   "})
    assert resp.status_code == 422, resp.text


def test_update_alert_rule_strips_name_and_clears_webhook(client, db_session):
    rule = create_rule(db_session, name="Before", webhook_url="https://hooks.example.com/T1")
    db_session.commit()

    resp = client.patch(
        f"/api/v1/monitoring/alerts/{rule.id}",
        json={"name": "  After  ", "webhook_url": None},
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["name"] == "After"
    assert resp.json()["webhook_url"] is None


def test_update_and_delete_missing_rule_return_404(client):
    resp = client.patch("/api/v1/monitoring/alerts/999999", json={"name": "x"})
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Alert rule not found"

    resp = client.delete("/api/v1/monitoring/alerts/999999")
    assert resp.status_code == 404


def test_delete_alert_rule(client, db_session):
    rule_id = create_rule(db_session).id
    db_session.commit()

    resp = client.delete(f"/api/v1/monitoring/alerts/{rule_id}")
    assert resp.status_code == 204

    assert db_session.query(AlertRule).filter(AlertRule.id == rule_id).first() is None


def test_alert_history_endpoint(client, db_session, clock):
    rule = create_rule(db_session, name="Traffic", metric="request_count")
    db_session.commit()
    recorder = HistoryRecorder(db_session, clock=clock)
    recorder.record(rule, 5, 0, "older", "telegram_sent")
    clock.advance(minutes=6)
    recorder.record(rule, 8, 0, "newer", "no_notification")

    resp = client.get("/api/v1/monitoring/alerts/history", params={"limit": 10})
    assert resp.status_code == 200, resp.text
    items = resp.json()["items"]
    assert [item["message"] for item in items] == ["newer", "older"]
    assert items[0]["alert_name"] == "Traffic"
    assert items[0]["metric"] == "request_count"
    assert items[0]["webhook_status"] == "no_notification"


@pytest.mark.parametrize("limit", [0, 101])
def test_alert_history_limit_bounds(client, limit):
    resp = client.get("/api/v1/monitoring/alerts/history", params={"limit": limit})
    assert resp.status_code == 422


def test_manual_check_runs_one_cycle(client, db_session):
    for seconds in (5, 15):
        create_request_log(db_session, T0 - timedelta(seconds=seconds))
    rule_id = create_rule(db_session, metric="request_count", operator=">", threshold=1).id
    db_session.commit()

    resp = client.post("/api/v1/monitoring/alerts/check")
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["triggered"] == 1
    assert body["evaluated"] == 1
    assert body["hourly_alert_count"] == 1
    assert body["max_alerts_per_hour"] == 10

    records = db_session.query(AlertHistory).filter(AlertHistory.alert_rule_id == rule_id).all()
    assert len(records) == 1
    assert records[0].metric_value == 2


def test_metrics_catalog(client):
    resp = client.get("/api/v1/monitoring/metrics")
    assert resp.status_code == 200
    metrics = {item["metric"]: item for item in resp.json()["items"]}
    assert set(metrics) == {"error_rate", "response_time", "error_count", "memory_usage", "request_count"}
    assert metrics["request_count"]["window_minutes"] == 1
    assert metrics["memory_usage"]["window_minutes"] is None


def test_telegram_status_not_configured(client):
    resp = client.get("/api/v1/monitoring/telegram/status")
    assert resp.status_code == 200
    assert resp.json() == {"configured": False, "bot_token": None, "chat_id": None}


def test_telegram_test_requires_configuration(client):
    resp = client.post("/api/v1/monitoring/telegram/test")
    assert resp.status_code == 400


def test_telegram_test_and_status_when_configured(db_session, clock):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    checker = AlertChecker(
        session_factory=lambda: db_session,
        dispatcher=build_dispatcher(handler, bot_token="123:secretWXYZ", chat_id="777", clock=clock),
        clock=clock,
    )
    app.dependency_overrides[get_alert_checker] = lambda: checker
    try:
        with TestClient(app) as c:
            status_resp = c.get("/api/v1/monitoring/telegram/status")
            test_resp = c.post("/api/v1/monitoring/telegram/test")
    finally:
        app.dependency_overrides.clear()

    assert status_resp.json() == {"configured": True, "bot_token": "****WXYZ", "chat_id": "777"}
    assert test_resp.status_code == 200, test_resp.text
    assert test_resp.json()["success"] is True
    assert len(requests) == 1


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
