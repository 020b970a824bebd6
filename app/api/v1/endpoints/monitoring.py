from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.core.db import get_db
from app.schemas.alert_checker import CycleSummary, TelegramStatusResponse, TelegramTestResponse
from app.schemas.alert_history import AlertHistoryResponse
from app.schemas.alert_metrics import AlertMetricsResponse
from app.schemas.alert_rules import (
    AlertRuleCreate,
    AlertRuleListResponse,
    AlertRuleSchema,
    AlertRuleUpdate,
)
from app.services.alert_checker import AlertChecker, get_alert_checker
from app.services.alert_history import list_alert_history
from app.services.alert_metrics import build_alert_metrics_catalog
from app.services.alert_notifications import send_test_message
from app.services.alert_rules import (
    create_alert_rule,
    delete_alert_rule,
    list_alert_rules,
    update_alert_rule,
)

router = APIRouter()


@router.get(
    "/alerts",
    response_model=AlertRuleListResponse,
)
def get_alert_rules(
    db: Session = Depends(get_db),
) -> AlertRuleListResponse:
    rules = list_alert_rules(db=db)
    items = [AlertRuleSchema.model_validate(rule, from_attributes=True) for rule in rules]
    return AlertRuleListResponse(items=items)


@router.post(
    "/alerts",
    response_model=AlertRuleSchema,
    status_code=status.HTTP_201_CREATED,
)
def create_alert_rule_api(
    payload: AlertRuleCreate,
    db: Session = Depends(get_db),
) -> AlertRuleSchema:
    rule = create_alert_rule(db=db, data=payload)
    return AlertRuleSchema.model_validate(rule, from_attributes=True)


@router.get(
    "/alerts/history",
    response_model=AlertHistoryResponse,
)
def get_alert_history(
    limit: int = Query(default=50, ge=1, le=100),
    db: Session = Depends(get_db),
) -> AlertHistoryResponse:
    items = list_alert_history(db=db, limit=limit)
    return AlertHistoryResponse(items=items)


@router.post(
    "/alerts/check",
    response_model=CycleSummary,
)
def run_alert_check(
    checker: AlertChecker = Depends(get_alert_checker),
) -> CycleSummary:
    return checker.check_alerts()


@router.patch(
    "/alerts/{rule_id}",
    response_model=AlertRuleSchema,
)
def update_alert_rule_api(
    rule_id: int,
    payload: AlertRuleUpdate,
    db: Session = Depends(get_db),
) -> AlertRuleSchema:
    rule = update_alert_rule(db=db, rule_id=rule_id, data=payload)
    if rule is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Alert rule not found",
        )
    return AlertRuleSchema.model_validate(rule, from_attributes=True)


@router.delete(
    "/alerts/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_alert_rule_api(
    rule_id: int,
    db: Session = Depends(get_db),
) -> None:
    deleted = delete_alert_rule(db=db, rule_id=rule_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Alert rule not found",
        )
    return None


@router.get(
    "/metrics",
    response_model=AlertMetricsResponse,
)
def get_alert_metrics() -> AlertMetricsResponse:
    return build_alert_metrics_catalog()


@router.post(
    "/telegram/test",
    response_model=TelegramTestResponse,
)
def send_telegram_test(
    checker: AlertChecker = Depends(get_alert_checker),
) -> TelegramTestResponse:
    telegram = checker.dispatcher.telegram
    if not telegram.configured:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Telegram is not configured. Set TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID.",
        )

    success, message = send_test_message(telegram)
    if not success:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=message,
        )
    return TelegramTestResponse(success=True, message=message)


@router.get(
    "/telegram/status",
    response_model=TelegramStatusResponse,
)
def get_telegram_status(
    checker: AlertChecker = Depends(get_alert_checker),
) -> TelegramStatusResponse:
    telegram = checker.dispatcher.telegram
    return TelegramStatusResponse(
        configured=telegram.configured,
        bot_token=telegram.masked_token(),
        chat_id=telegram.chat_id if telegram.configured else None,
    )
