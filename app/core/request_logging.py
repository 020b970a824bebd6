from __future__ import annotations

import logging
import time
import traceback

from fastapi import FastAPI, Request
from starlette.concurrency import run_in_threadpool
from starlette.responses import Response

from app.core import db as db_module
from app.services.telemetry import record_error, record_request


logger = logging.getLogger(__name__)


# The monitoring API is excluded so polling it does not feed its own metrics.
EXCLUDED_PATH_PREFIXES = (
    "/health",
    "/favicon.ico",
    "/api/v1/monitoring",
)
EXCLUDED_METHODS = {"OPTIONS"}

SLOW_REQUEST_THRESHOLD_MS = 3000


def _should_log(request: Request) -> bool:
    if request.method in EXCLUDED_METHODS:
        return False
    return not request.url.path.startswith(EXCLUDED_PATH_PREFIXES)


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _persist(
    request: Request,
    status_code: int,
    response_time: int,
    exc: BaseException | None = None,
) -> None:
    path = request.url.path
    ip_address = _client_ip(request)
    user_agent = request.headers.get("user-agent")

    try:
        db = db_module.SessionLocal()
    except Exception:
        logger.exception("Failed to open a session for request logging")
        return

    try:
        record_request(
            db,
            endpoint=path,
            method=request.method,
            status_code=status_code,
            response_time=response_time,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if exc is not None:
            record_error(
                db,
                error_type=type(exc).__name__,
                message=str(exc),
                stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                endpoint=path,
                method=request.method,
                status_code=status_code,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        elif status_code >= 500:
            record_error(
                db,
                error_type="ServerError",
                message=f"{status_code} error on {request.method} {path}",
                endpoint=path,
                method=request.method,
                status_code=status_code,
                ip_address=ip_address,
                user_agent=user_agent,
            )
    except Exception:
        logger.exception("Failed to log request %s %s", request.method, path)
        db.rollback()
    finally:
        db.close()


def install_request_logging(app: FastAPI) -> None:
    """Record every handled request into request_logs / error_logs."""

    @app.middleware("http")
    async def request_logger(request: Request, call_next) -> Response:
        if not _should_log(request):
            return await call_next(request)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            await run_in_threadpool(_persist, request, 500, elapsed_ms, exc)
            raise

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if elapsed_ms > SLOW_REQUEST_THRESHOLD_MS:
            logger.warning(
                "Slow request: %s %s took %sms", request.method, request.url.path, elapsed_ms
            )
        await run_in_threadpool(_persist, request, response.status_code, elapsed_ms)
        return response
