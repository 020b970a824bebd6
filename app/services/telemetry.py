from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.models import ErrorLog, RequestLog


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TelemetrySource:
    """Windowed reads over the request/error logs written by the request logger.

    Windows are measured back from ``clock()`` so tests can pin time.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = _utcnow) -> None:
        self._db = db
        self._clock = clock

    def _cutoff(self, window_minutes: int) -> datetime:
        return self._clock() - timedelta(minutes=window_minutes)

    def rollback(self) -> None:
        """Discard a failed read so the session can serve the next query.

        PostgreSQL refuses further statements in a transaction that has
        seen an error.
        """
        self._db.rollback()

    def count_requests(self, window_minutes: int, min_status: int | None = None) -> int:
        query = self._db.query(func.count(RequestLog.id)).filter(
            RequestLog.created_at > self._cutoff(window_minutes)
        )
        if min_status is not None:
            query = query.filter(RequestLog.status_code >= min_status)
        return int(query.scalar() or 0)

    def avg_response_time(self, window_minutes: int) -> float:
        value = (
            self._db.query(func.avg(RequestLog.response_time))
            .filter(RequestLog.created_at > self._cutoff(window_minutes))
            .scalar()
        )
        return float(value or 0)

    def count_errors(self, window_minutes: int) -> int:
        value = (
            self._db.query(func.count(ErrorLog.id))
            .filter(ErrorLog.created_at > self._cutoff(window_minutes))
            .scalar()
        )
        return int(value or 0)


def record_request(
    db: Session,
    *,
    endpoint: str,
    method: str,
    status_code: int,
    response_time: int,
    ip_address: str | None = None,
    user_agent: str | None = None,
    created_at: datetime | None = None,
) -> RequestLog:
    row = RequestLog(
        endpoint=endpoint[:255],
        method=method[:10],
        status_code=status_code,
        response_time=response_time,
        ip_address=ip_address[:45] if ip_address else None,
        user_agent=user_agent[:500] if user_agent else None,
        created_at=created_at or _utcnow(),
    )
    db.add(row)
    db.commit()
    return row


def record_error(
    db: Session,
    *,
    error_type: str,
    message: str | None,
    stack: str | None = None,
    endpoint: str | None = None,
    method: str | None = None,
    status_code: int | None = 500,
    ip_address: str | None = None,
    user_agent: str | None = None,
    created_at: datetime | None = None,
) -> ErrorLog:
    row = ErrorLog(
        error_type=error_type[:100],
        message=message,
        stack=stack,
        endpoint=endpoint[:255] if endpoint else None,
        method=method,
        status_code=status_code,
        ip_address=ip_address[:45] if ip_address else None,
        user_agent=user_agent[:500] if user_agent else None,
        created_at=created_at or _utcnow(),
    )
    db.add(row)
    db.commit()
    return row
