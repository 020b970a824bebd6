from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.orm import Session

from app.models.models import AlertHistory, AlertRule
from app.schemas.alert_history import AlertHistorySchema
from app.services.alert_rules import touch_last_triggered


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HistoryRecorder:
    """Appends alert history and advances the rule's last trigger time."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = _utcnow) -> None:
        self._db = db
        self._clock = clock

    def record(
        self,
        rule: AlertRule,
        metric_value: float,
        threshold: float,
        message: str,
        final_status: str,
    ) -> bool:
        """Persist one trigger. Returns False if the write was dropped.

        Failures are logged and rolled back, never raised, so the
        scheduler loop keeps running.
        """
        now = self._clock()
        try:
            self._db.add(
                AlertHistory(
                    alert_rule_id=rule.id,
                    metric_value=metric_value,
                    threshold=threshold,
                    message=message,
                    webhook_status=final_status,
                    created_at=now,
                )
            )
            self._db.flush()
            touch_last_triggered(self._db, rule.id, now)
            self._db.commit()
            return True
        except Exception:
            logger.exception("Failed to save alert history for rule %s", rule.id)
            try:
                self._db.rollback()
            except Exception:
                logger.exception("Rollback after failed alert history write also failed")
            return False


def list_alert_history(db: Session, limit: int = 50) -> list[AlertHistorySchema]:
    rows = (
        db.query(AlertHistory, AlertRule.name, AlertRule.metric)
        .join(AlertRule, AlertHistory.alert_rule_id == AlertRule.id)
        .order_by(AlertHistory.created_at.desc(), AlertHistory.id.desc())
        .limit(limit)
        .all()
    )

    return [
        AlertHistorySchema(
            id=record.id,
            alert_rule_id=record.alert_rule_id,
            alert_name=name,
            metric=metric,
            metric_value=record.metric_value,
            threshold=record.threshold,
            message=record.message,
            webhook_status=record.webhook_status,
            created_at=record.created_at,
        )
        for record, name, metric in rows
    ]
