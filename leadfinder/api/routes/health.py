from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from leadfinder.config import settings

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
async def readiness_check():
    """Readiness check: discovery needs an inference credential to run."""
    if not settings.inference_configured:
        logger.warning("health.not_ready", extra={"reason": "inference_not_configured"})
        raise HTTPException(status_code=503, detail="Inference provider is not configured")

    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "inference": "configured",
        "store": "supabase" if settings.supabase_configured else "memory",
        "search": settings.searxng_url,
    }
