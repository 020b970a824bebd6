from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import httpx

from app.core.config import settings


logger = logging.getLogger(__name__)


TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"

# Channel outcomes.
SENT = "sent"
FAILED = "failed"
NOT_CONFIGURED = "not_configured"
NO_WEBHOOK = "no_webhook"

# Summary status persisted to alert history.
TELEGRAM_SENT = "telegram_sent"
WEBHOOK_SENT = "webhook_sent"
NO_NOTIFICATION = "no_notification"
STATUS_FAILED = "failed"

# First matching row wins.
FINAL_STATUS_TABLE: tuple[tuple[Callable[[str, str], bool], str], ...] = (
    (lambda telegram, webhook: telegram == SENT, TELEGRAM_SENT),
    (lambda telegram, webhook: webhook == SENT, WEBHOOK_SENT),
    (lambda telegram, webhook: telegram == NOT_CONFIGURED and webhook == NO_WEBHOOK, NO_NOTIFICATION),
    (lambda telegram, webhook: True, STATUS_FAILED),
)


def resolve_final_status(telegram_status: str, webhook_status: str) -> str:
    for matches, final_status in FINAL_STATUS_TABLE:
        if matches(telegram_status, webhook_status):
            return final_status
    return STATUS_FAILED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Rule(Protocol):
    name: str
    webhook_url: str | None


@dataclass(frozen=True)
class DispatchResult:
    telegram_status: str
    webhook_status: str
    final_status: str


class _HttpChannel:
    def __init__(self, client: httpx.Client | None, timeout: float) -> None:
        self._client = client
        self._timeout = timeout

    def _post_json(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, json=payload, timeout=self._timeout)
        with httpx.Client(timeout=self._timeout) as client:
            return client.post(url, json=payload)


class TelegramChannel(_HttpChannel):
    """Primary chat channel. Inert unless both bot token and chat id are set."""

    def __init__(
        self,
        bot_token: str | None,
        chat_id: str | None,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(client, timeout)
        self.bot_token = bot_token
        self.chat_id = chat_id
        self._clock = clock

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def masked_token(self) -> str | None:
        if not self.configured:
            return None
        return "****" + self.bot_token[-4:]

    def send_text(self, text: str) -> httpx.Response:
        return self._post_json(
            TELEGRAM_API_URL.format(token=self.bot_token),
            {"chat_id": self.chat_id, "text": text, "parse_mode": "HTML"},
        )

    def send(self, alert_name: str, message: str) -> str:
        if not self.configured:
            return NOT_CONFIGURED

        timestamp = self._clock().strftime("%Y-%m-%d %H:%M:%S %Z")
        text = (
            f"🚨 <b>Alert: {html.escape(alert_name)}</b>\n\n"
            f"{html.escape(message)}\n\n"
            f"⏰ {timestamp}"
        )
        try:
            response = self.send_text(text)
        except httpx.HTTPError:
            logger.exception("Telegram send error for alert %s", alert_name)
            return FAILED

        if response.is_success:
            logger.info("Telegram alert sent: %s", alert_name)
            return SENT
        logger.error(
            "Telegram send failed for alert %s: %s %s",
            alert_name,
            response.status_code,
            response.text[:500],
        )
        return FAILED


class WebhookChannel(_HttpChannel):
    """Per-rule webhook using the Slack-style block payload."""

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(client, timeout)
        self._clock = clock

    def build_payload(self, alert_name: str, message: str) -> dict[str, Any]:
        triggered_at = self._clock().isoformat()
        return {
            "text": f"🚨 Alert: {alert_name}",
            "blocks": [
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": f"*🚨 Alert Triggered: {alert_name}*\n{message}",
                    },
                },
                {
                    "type": "context",
                    "elements": [
                        {"type": "mrkdwn", "text": f"_Triggered at {triggered_at}_"},
                    ],
                },
            ],
        }

    def send(self, webhook_url: str, alert_name: str, message: str) -> str:
        try:
            response = self._post_json(webhook_url, self.build_payload(alert_name, message))
        except httpx.HTTPError:
            logger.exception("Webhook send error for alert %s", alert_name)
            return FAILED

        if response.is_success:
            return SENT
        logger.error("Webhook for alert %s answered %s", alert_name, response.status_code)
        return FAILED


class NotificationDispatcher:
    def __init__(self, telegram: TelegramChannel, webhook: WebhookChannel) -> None:
        self.telegram = telegram
        self.webhook = webhook

    def dispatch(self, rule: _Rule, message: str) -> DispatchResult:
        """Send a triggered alert through every configured channel.

        Never raises: a channel that errors for any reason counts as
        ``failed``.
        """
        try:
            telegram_status = self.telegram.send(rule.name, message)
        except Exception:
            logger.exception("Unexpected Telegram channel error for alert %s", rule.name)
            telegram_status = FAILED

        webhook_status = NO_WEBHOOK
        if rule.webhook_url:
            try:
                webhook_status = self.webhook.send(rule.webhook_url, rule.name, message)
            except Exception:
                logger.exception("Unexpected webhook channel error for alert %s", rule.name)
                webhook_status = FAILED

        return DispatchResult(
            telegram_status=telegram_status,
            webhook_status=webhook_status,
            final_status=resolve_final_status(telegram_status, webhook_status),
        )


def build_notification_dispatcher(
    client: httpx.Client | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> NotificationDispatcher:
    timeout = settings.ALERT_HTTP_TIMEOUT_SECONDS
    return NotificationDispatcher(
        telegram=TelegramChannel(
            bot_token=settings.TELEGRAM_BOT_TOKEN,
            chat_id=settings.TELEGRAM_CHAT_ID,
            client=client,
            timeout=timeout,
            clock=clock,
        ),
        webhook=WebhookChannel(client=client, timeout=timeout, clock=clock),
    )


def send_test_message(telegram: TelegramChannel) -> tuple[bool, str]:
    """Send a fixed test message, returning (success, detail)."""
    if not telegram.configured:
        return False, "Telegram is not configured. Set TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID."

    text = (
        "✅ <b>Test message</b>\n\n"
        "Monitoring Telegram notifications are working.\n\n"
        f"⏰ {_utcnow().strftime('%Y-%m-%d %H:%M:%S %Z')}"
    )
    try:
        response = telegram.send_text(text)
    except httpx.HTTPError as exc:
        logger.exception("Telegram test message failed")
        return False, f"Failed to send test message: {exc}"

    if response.is_success:
        return True, "Telegram test message sent"

    description = None
    try:
        description = response.json().get("description")
    except ValueError:
        pass
    return False, description or "Telegram rejected the test message"
