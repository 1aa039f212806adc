"""
Health check endpoint for the evaluation API.
"""

from fastapi import APIRouter, status

from formengine.core.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def liveness_check():
    """
    Simple liveness check - confirms the app is running.
    The engine is stateless, so liveness and readiness share this endpoint.
    """
    settings = get_settings()
    return {
        "status": "healthy",
        "default_language": settings.default_language,
        "default_phase": settings.default_phase,
    }
