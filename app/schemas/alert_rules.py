from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

from app.services.alert_metrics import get_alert_rule_metrics
from app.services.alert_policy import OPERATORS


ALLOWED_METRICS = get_alert_rule_metrics()
ALLOWED_OPERATORS = set(OPERATORS)


def _check_metric(value: str) -> str:
    if value not in ALLOWED_METRICS:
        allowed = ", ".join(sorted(ALLOWED_METRICS))
        raise ValueError(f"metric must be one of: {allowed}")
    return value


def _check_operator(value: str) -> str:
    if value not in ALLOWED_OPERATORS:
        allowed = ", ".join(OPERATORS)
        raise ValueError(f"operator must be one of: {allowed}")
    return value


def _check_webhook_url(value: str | None) -> str | None:
    if value is None or value == "":
        return None
    if not value.startswith(("http://", "https://")):
        raise ValueError("webhook_url must be an http(s) URL")
    return value


class AlertRuleSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str

    metric: str
    operator: str
    threshold: float

    webhook_url: str | None
    enabled: bool
    last_triggered_at: datetime | None


class AlertRuleCreate(BaseModel):
    name: str

    metric: str
    operator: str
    threshold: float

    webhook_url: str | None = None
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be empty")
        return value

    @field_validator("metric")
    @classmethod
    def validate_metric(cls, value: str) -> str:
        return _check_metric(value)

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, value: str) -> str:
        return _check_operator(value)

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook_url(cls, value: str | None) -> str | None:
        return _check_webhook_url(value)


class AlertRuleUpdate(BaseModel):
    name: str | None = None
    metric: str | None = None
    operator: str | None = None
    threshold: float | None = None
    webhook_url: str | None = None
    enabled: bool | None = None

    # Omitted fields are left alone; an explicit null is only valid for webhook_url.
    @field_validator("name", "metric", "operator", "threshold", "enabled")
    @classmethod
    def reject_null(cls, value):
        if value is None:
            raise ValueError("field may be omitted but not set to null")
        return value

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be empty")
        return value

    @field_validator("metric")
    @classmethod
    def validate_metric(cls, value: str) -> str:
        return _check_metric(value)

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, value: str) -> str:
        return _check_operator(value)

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook_url(cls, value: str | None) -> str | None:
        return _check_webhook_url(value)


class AlertRuleListResponse(BaseModel):
    items: list[AlertRuleSchema]
