from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.models import AlertRule
from app.schemas.alert_checker import CycleSummary
from app.services.alert_history import HistoryRecorder
from app.services.alert_metrics import MetricProvider, get_metric_label
from app.services.alert_notifications import NotificationDispatcher, build_notification_dispatcher
from app.services.alert_policy import CooldownGovernor, RateLimiter, compare_value
from app.services.alert_rules import list_enabled_rules
from app.services.telemetry import TelemetrySource


logger = logging.getLogger(__name__)


JOB_ID = "alert_checker_job"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_metric_value(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"


def render_alert_message(rule: AlertRule, metric_value: float) -> str:
    label = get_metric_label(rule.metric)
    return (
        f"📊 {label}: {format_metric_value(metric_value)}\n"
        f"⚠️ Threshold: {rule.operator} {format_metric_value(rule.threshold)}"
    )


class AlertChecker:
    """Periodically evaluates enabled alert rules and sends notifications.

    One instance owns the process-local cycle and hourly counters. Cycles
    run on APScheduler's worker thread with ``max_instances=1``, so a slow
    cycle causes the next tick to be skipped rather than to overlap, and a
    manual ``check_alerts`` call made while a cycle runs is skipped too.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = _utcnow,
        metric_provider_factory: Callable[[TelemetrySource], MetricProvider] = MetricProvider,
        engine: Engine | None = None,
        enabled: bool = True,
        interval_seconds: int = 60,
        initial_delay_seconds: int = 10,
        cooldown_minutes: int = 5,
        max_alerts_per_cycle: int = 2,
        max_alerts_per_hour: int = 10,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher or build_notification_dispatcher(clock=clock)
        self._clock = clock
        self._metric_provider_factory = metric_provider_factory
        self._engine = engine
        self._enabled = enabled
        self._interval_seconds = interval_seconds
        self._initial_delay_seconds = initial_delay_seconds

        self.cooldown = CooldownGovernor(timedelta(minutes=cooldown_minutes), clock=clock)
        self.rate_limiter = RateLimiter(
            max_per_cycle=max_alerts_per_cycle,
            max_per_hour=max_alerts_per_hour,
            clock=clock,
        )

        self._scheduler: Optional[BackgroundScheduler] = None

        # Scheduled ticks and manual checks run on different threads; only one
        # cycle may touch the counters at a time.
        self._cycle_lock = threading.Lock()

        # PostgreSQL advisory lock so that only one backend process owns the
        # counters when several replicas run.
        self._lock_key: int = 9_223_372_036_854_770_002
        self._lock_connection = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    def start(self) -> None:
        """Start the repeating check. Idempotent within a process."""
        if not self._enabled:
            logger.warning("Alert checker disabled via ALERT_CHECKER_ENABLED")
            return

        if self.running:
            logger.warning("Alert checker already running, skipping start")
            return

        if not self._acquire_advisory_lock():
            logger.warning("Alert checker disabled (PostgreSQL advisory lock not acquired)")
            return

        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self._run_check_job,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=self._initial_delay_seconds),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.warning(
            "Alert checker started (interval %ss, first check in %ss)",
            self._interval_seconds,
            self._initial_delay_seconds,
        )

    def stop(self) -> None:
        """Stop future ticks. An in-flight cycle is left to finish."""
        if self._scheduler is not None:
            try:
                self._scheduler.shutdown(wait=False)
                logger.warning("Alert checker stopped")
            finally:
                self._scheduler = None

        self._release_advisory_lock()

    def check_alerts(self) -> CycleSummary:
        """Run exactly one evaluation cycle. Never raises.

        Returns immediately with ``stopped_reason="cycle_in_progress"`` when
        another cycle is still running.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Alert check already in progress, skipping")
            return CycleSummary(
                max_alerts_per_hour=self.rate_limiter.max_per_hour,
                hourly_alert_count=self.rate_limiter.counters.hourly_alert_count,
                stopped_reason="cycle_in_progress",
            )
        try:
            return self._check_alerts_locked()
        finally:
            self._cycle_lock.release()

    def _check_alerts_locked(self) -> CycleSummary:
        limiter = self.rate_limiter
        limiter.begin_cycle()
        summary = CycleSummary(max_alerts_per_hour=limiter.max_per_hour)

        if limiter.hourly_exhausted():
            logger.warning(
                "Hourly alert limit (%s) reached, skipping check", limiter.max_per_hour
            )
            summary.stopped_reason = "hourly_limit"
            summary.hourly_alert_count = limiter.counters.hourly_alert_count
            return summary

        db: Session | None = None
        try:
            db = self._session_factory()
            self._run_cycle(db, summary)
        except Exception:
            logger.exception("Alert checker cycle aborted")
            summary.stopped_reason = summary.stopped_reason or "rules_unavailable"
        finally:
            if db is not None:
                db.close()

        summary.hourly_alert_count = limiter.counters.hourly_alert_count
        if summary.triggered > 0:
            logger.warning(
                "%s alert(s) sent this cycle (hourly: %s/%s)",
                summary.triggered,
                limiter.counters.hourly_alert_count,
                limiter.max_per_hour,
            )
        return summary

    def _run_cycle(self, db: Session, summary: CycleSummary) -> None:
        limiter = self.rate_limiter
        rules = list_enabled_rules(db)

        metrics = self._metric_provider_factory(TelemetrySource(db, clock=self._clock))
        recorder = HistoryRecorder(db, clock=self._clock)

        for rule in rules:
            if limiter.cycle_exhausted():
                logger.warning(
                    "Max alerts per cycle (%s) reached, skipping remaining rules",
                    limiter.max_per_cycle,
                )
                summary.stopped_reason = "cycle_limit"
                break

            if limiter.hourly_exhausted():
                logger.warning("Hourly alert limit reached during cycle")
                summary.stopped_reason = "hourly_limit"
                break

            try:
                if self.cooldown.is_suppressed(rule):
                    summary.skipped_cooldown += 1
                    continue

                summary.evaluated += 1
                metric_value = metrics.compute(rule.metric)
                if not compare_value(metric_value, rule.operator, rule.threshold):
                    continue

                message = render_alert_message(rule, metric_value)
                logger.warning(
                    "Alert triggered: %s - %s is %s", rule.name, rule.metric, metric_value
                )
                result = self._dispatcher.dispatch(rule, message)

                limiter.record_fire()
                summary.triggered += 1

                recorder.record(rule, metric_value, rule.threshold, message, result.final_status)
            except Exception:
                summary.failed += 1
                logger.exception("Error checking alert %s", rule.name)

    def _run_check_job(self) -> None:
        logger.debug("Alert check job started")
        self.check_alerts()

    def _acquire_advisory_lock(self) -> bool:
        """Take a session-level PostgreSQL advisory lock.

        The lock lives as long as the held connection. Other databases have
        no cross-process lock and always succeed.
        """
        if self._engine is None or self._engine.dialect.name != "postgresql":
            return True

        if self._lock_connection is not None:
            return True

        conn: Connection | None = None
        try:
            conn = self._engine.connect()
            acquired = conn.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": self._lock_key}
            ).scalar()
            conn.commit()
        except Exception:
            logger.exception("Failed to acquire PostgreSQL advisory lock")
            if conn is not None:
                conn.close()
            return False

        if not acquired:
            logger.warning(
                "Advisory lock %s held by another process, not starting alert checker",
                self._lock_key,
            )
            conn.close()
            return False

        self._lock_connection = conn
        logger.warning("Alert checker advisory lock acquired (key=%s)", self._lock_key)
        return True

    def _release_advisory_lock(self) -> None:
        conn = self._lock_connection
        if conn is None:
            return

        self._lock_connection = None
        try:
            conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": self._lock_key})
            conn.commit()
        except Exception:
            # Closing the connection releases the lock anyway.
            logger.exception("Failed to release PostgreSQL advisory lock explicitly")
        finally:
            conn.close()


_default_checker: AlertChecker | None = None


def get_alert_checker() -> AlertChecker:
    """Return the process-wide checker, creating it on first use."""
    global _default_checker
    if _default_checker is None:
        from app.core.db import SessionLocal, engine

        _default_checker = AlertChecker(
            session_factory=SessionLocal,
            engine=engine,
            enabled=settings.ALERT_CHECKER_ENABLED,
            interval_seconds=settings.ALERT_CHECK_INTERVAL_SECONDS,
            initial_delay_seconds=settings.ALERT_INITIAL_DELAY_SECONDS,
            cooldown_minutes=settings.ALERT_COOLDOWN_MINUTES,
            max_alerts_per_cycle=settings.MAX_ALERTS_PER_CYCLE,
            max_alerts_per_hour=settings.MAX_ALERTS_PER_HOUR,
        )
    return _default_checker


def start_alert_checker() -> None:
    get_alert_checker().start()


def stop_alert_checker() -> None:
    if _default_checker is not None:
        _default_checker.stop()


def check_alerts() -> CycleSummary:
    return get_alert_checker().check_alerts()
