"""
Health check API routes.
"""
from fastapi import APIRouter, Depends, Request
from datetime import datetime, timezone
from typing import Any, Dict
import logging

from sqlalchemy import text
from sqlalchemy.orm import Session

from ...config import settings
from ...database import get_db, get_database_info
from ...dialog.call_wrapper import get_breaker_metrics
from ...utils.telemetry import metrics_collector

logger = logging.getLogger(__name__)

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("")
async def health_check() -> Dict[str, Any]:
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": _now(),
        "version": settings.app_version,
        "environment": settings.environment
    }


@router.get("/ready")
async def readiness_check(request: Request, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """
    Readiness check for all services.

    Returns:
        Detailed service health status
    """
    services = {}
    overall_status = "healthy"

    try:
        db.execute(text("SELECT 1"))
        services["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        services["database"] = "unhealthy"
        overall_status = "unhealthy"

    completion_client = getattr(request.app.state, "completion_client", None)
    if completion_client is None:
        services["completion_api"] = "not_initialized"
        overall_status = "degraded" if overall_status == "healthy" else overall_status
    elif not completion_client.is_configured:
        services["completion_api"] = "not_configured"
        overall_status = "degraded" if overall_status == "healthy" else overall_status
    else:
        services["completion_api"] = "configured"

    change_feed = getattr(request.app.state, "change_feed", None)
    services["change_feed"] = (
        f"{change_feed.subscriber_count} subscribers" if change_feed is not None else "not_initialized"
    )

    return {
        "status": overall_status,
        "timestamp": _now(),
        "version": settings.app_version,
        "services": services,
        "database": get_database_info(),
        "circuit_breakers": get_breaker_metrics(),
        "stats": metrics_collector.get_stats()
    }


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    """Simple liveness check."""
    return {"status": "alive", "timestamp": _now()}
