from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class AlertHistorySchema(BaseModel):
    id: int
    alert_rule_id: int
    alert_name: str
    metric: str

    metric_value: float
    threshold: float
    message: str
    webhook_status: str

    created_at: datetime


class AlertHistoryResponse(BaseModel):
    items: list[AlertHistorySchema]
