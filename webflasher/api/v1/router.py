"""API v1 Router"""

from fastapi import APIRouter

from webflasher.api.v1.endpoints import telemetry

api_router = APIRouter()

api_router.include_router(telemetry.router, prefix="/flash", tags=["flash"])


@api_router.get("/")
async def api_root():
    """API root endpoint"""
    return {
        "message": "API v1",
        "status": "active",
        "version": "1.0.0",
    }
