from fastapi import APIRouter

from .health import router as health_router
from .loop import router as loop_router

api_router = APIRouter()
api_router.include_router(health_router, prefix="/health", tags=["health"])
api_router.include_router(loop_router, prefix="/loop", tags=["loop"])

__all__ = ["api_router"]
