from fastapi import APIRouter

from app.api.v1.endpoints import monitoring

api_router = APIRouter()

api_router.include_router(monitoring.router, prefix="/monitoring", tags=["monitoring"])
