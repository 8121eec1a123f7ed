"""
Health check endpoints for the REST API.

GET /api/health is cheap and dependency-free: offline clients poll it to
decide whether they are online.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from shared.config.settings import settings
from shared.config.logging import rest_api_logger as logger
from shared.infrastructure.db import SessionLocal
from rest_api.services.payments.circuit_breaker import cashfree_breaker


router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
def health_check():
    """
    Basic health check endpoint.
    Returns service status without checking dependencies.
    """
    return {
        "status": "healthy",
        "service": "rest-api",
        "environment": settings.environment,
    }


@router.get("/health/detailed")
def detailed_health_check():
    """
    Health check that verifies the database and reports gateway breaker state.

    Returns 503 Service Unavailable if the database is down.
    """
    checks = {
        "service": "rest-api",
        "environment": settings.environment,
        "dependencies": {},
        "circuit_breakers": {"cashfree": cashfree_breaker.snapshot()},
    }

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        checks["dependencies"]["database"] = {"status": "healthy"}
        healthy = True
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        checks["dependencies"]["database"] = {"status": "unhealthy"}
        healthy = False

    checks["status"] = "healthy" if healthy else "degraded"
    if not healthy:
        return JSONResponse(content=checks, status_code=503)
    return checks
