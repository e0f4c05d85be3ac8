from fastapi import APIRouter

from link_health.api.routes import health, url_health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(url_health.router, prefix="/url-health", tags=["admin"])
