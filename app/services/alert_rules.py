from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from app.models.models import AlertRule
from app.schemas.alert_rules import AlertRuleCreate, AlertRuleUpdate


def list_enabled_rules(db: Session) -> list[AlertRule]:
    return (
        db.query(AlertRule)
        .filter(AlertRule.enabled.is_(True))
        .order_by(AlertRule.id)
        .all()
    )


def touch_last_triggered(db: Session, rule_id: int, triggered_at: datetime) -> None:
    """Set last_triggered_at without touching any operator-owned field."""
    db.query(AlertRule).filter(AlertRule.id == rule_id).update(
        {AlertRule.last_triggered_at: triggered_at},
        synchronize_session="fetch",
    )


def list_alert_rules(db: Session) -> list[AlertRule]:
    return db.query(AlertRule).order_by(AlertRule.created_at.desc(), AlertRule.id.desc()).all()


def create_alert_rule(db: Session, data: AlertRuleCreate) -> AlertRule:
    rule = AlertRule(
        name=data.name,
        metric=data.metric,
        operator=data.operator,
        threshold=data.threshold,
        webhook_url=data.webhook_url,
        enabled=data.enabled,
    )
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


def update_alert_rule(
    db: Session,
    rule_id: int,
    data: AlertRuleUpdate,
) -> AlertRule | None:
    rule = (
        db.query(AlertRule)
        .filter(AlertRule.id == rule_id)
        .first()
    )
    if rule is None:
        return None

    update_data = data.model_dump(exclude_unset=True)
    for field, value in update_data.items():
        setattr(rule, field, value)

    db.commit()
    db.refresh(rule)
    return rule


def delete_alert_rule(db: Session, rule_id: int) -> bool:
    rule = (
        db.query(AlertRule)
        .filter(AlertRule.id == rule_id)
        .first()
    )
    if rule is None:
        return False

    db.delete(rule)
    db.commit()
    return True
