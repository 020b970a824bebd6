from __future__ import annotations

from pydantic import BaseModel


class AlertMetricMetadata(BaseModel):
    metric: str
    label: str
    description: str
    unit: str | None = None

    # None for metrics sampled at call time rather than over a window.
    window_minutes: int | None = None


class AlertMetricsResponse(BaseModel):
    items: list[AlertMetricMetadata]
