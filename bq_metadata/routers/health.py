"""
Health check endpoints for monitoring and load balancer health checks
"""

import os
import time
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..auth import get_cache_stats

logger = structlog.get_logger()
router = APIRouter()


def check_bigquery_connection(request: Request) -> Dict[str, Any]:
    """Check BigQuery connectivity with the default credential"""
    start_time = time.time()
    service = request.app.state.metadata_services["api"]
    try:
        service.test_connection()
        return {
            "status": "healthy",
            "service": "bigquery",
            "response_time_ms": round((time.time() - start_time) * 1000, 2)
        }
    except Exception as e:
        logger.error("BigQuery health check failed", error=str(e))
        return {
            "status": "unhealthy",
            "service": "bigquery",
            "error": getattr(e, "detail", None) or str(e)
        }


def check_session_storage(request: Request) -> Dict[str, Any]:
    """Check that uploaded keys can be written"""
    credentials_dir = request.app.state.credential_store.credentials_dir
    writable = credentials_dir.is_dir() and os.access(credentials_dir, os.W_OK)
    return {
        "status": "healthy" if writable else "unhealthy",
        "path": str(credentials_dir),
    }


@router.get("/")
@router.get("/live")
async def liveness_check():
    """
    Liveness probe - indicates if the application is running
    Used by Kubernetes/Cloud Run to determine if container should be restarted
    """
    return {
        "status": "alive",
        "timestamp": time.time(),
        "service": "bq-metadata-api",
        "version": __version__
    }


@router.get("/ready")
def readiness_check(request: Request):
    """
    Readiness probe - indicates if the application is ready to serve traffic
    Used by load balancers to determine if traffic should be routed to this instance
    """
    settings = request.app.state.settings
    checks = {
        "bigquery": check_bigquery_connection(request),
        "session_storage": check_session_storage(request),
    }

    config_issues = []
    if not settings.gcp_project_id:
        config_issues.append("GCP_PROJECT_ID not set, using the credential's project")
    if settings.require_auth and not settings.firebase_project_id:
        config_issues.append("REQUIRE_AUTH is enabled without FIREBASE_PROJECT_ID")

    checks["configuration"] = {
        "status": "healthy",
        "default_key_configured": request.app.state.default_key_path is not None,
        "auth_required": settings.require_auth,
        "issues": config_issues
    }
    if settings.require_auth:
        checks["authentication"] = {"status": "healthy", "user_cache": get_cache_stats()}

    ready = all(check["status"] == "healthy" for check in checks.values())
    response = {
        "status": "ready" if ready else "not_ready",
        "timestamp": time.time(),
        "checks": checks,
        "service": "bq-metadata-api",
        "version": __version__
    }

    if not ready:
        logger.warning("Readiness check failed", checks=checks)
        return JSONResponse(status_code=503, content=response)
    return response
