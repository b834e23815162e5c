# /autoreply/routes/public.py

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from autoreply.config.settings import settings
from autoreply.services.cache_service import cache_service
from autoreply.services.db_service import db_service
from autoreply.utils.dependencies import verify_api_key

# Unauthenticated service endpoints: root, health probes and metrics (the
# latter behind the API key when one is configured).

router = APIRouter()


@router.get("/")
async def root():
    return {
        "service": "Auto-Reply Service",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Ready when MongoDB answers; Redis is optional and only reported."""
    if not await db_service.health_check():
        raise HTTPException(status_code=503, detail="Service not ready: database unavailable")

    cache_status = "not_configured"
    if cache_service.redis:
        try:
            await cache_service.redis.ping()
            cache_status = "connected"
        except Exception:
            cache_status = "error"
    return {"status": "ready", "services": {"database": "connected", "cache": cache_status}}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(_: None = Depends(verify_api_key)):
    return PlainTextResponse(generate_latest(), media_type="text/plain")
