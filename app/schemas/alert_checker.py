from __future__ import annotations

from pydantic import BaseModel


class CycleSummary(BaseModel):
    """Outcome of one evaluation cycle."""

    evaluated: int = 0
    triggered: int = 0
    skipped_cooldown: int = 0
    failed: int = 0

    hourly_alert_count: int = 0
    max_alerts_per_hour: int = 0

    # Set when the cycle stopped before visiting every enabled rule:
    # "hourly_limit", "cycle_limit", "rules_unavailable" or "cycle_in_progress".
    stopped_reason: str | None = None


class TelegramStatusResponse(BaseModel):
    configured: bool
    bot_token: str | None = None
    chat_id: str | None = None


class TelegramTestResponse(BaseModel):
    success: bool
    message: str
