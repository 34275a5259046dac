from __future__ import annotations

from fastapi import APIRouter

from .health import router as health_router
from .session import router as session_router
from .viewport import router as viewport_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(session_router)
api_router.include_router(viewport_router)
