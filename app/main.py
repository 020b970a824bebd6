from fastapi import FastAPI

from app.api.v1.router import api_router
from app.core.config import settings
from app.core.logger import init_logging
from app.core.request_logging import install_request_logging
from app.services.alert_checker import start_alert_checker, stop_alert_checker


init_logging()

app = FastAPI(title=settings.APP_NAME)
install_request_logging(app)
app.include_router(api_router, prefix="/api/v1")


@app.on_event("startup")
def _startup_event() -> None:
    start_alert_checker()


@app.on_event("shutdown")
def _shutdown_event() -> None:
    stop_alert_checker()


@app.get("/health")
def health():
    return {"status": "ok"}
