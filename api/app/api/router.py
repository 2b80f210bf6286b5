from fastapi import APIRouter

from app.api.routes import grievances, health, tracking

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(grievances.router, prefix="/grievances", tags=["grievances"])
api_router.include_router(tracking.router, prefix="/tracking", tags=["tracking"])
