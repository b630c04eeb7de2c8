"""
BigQuery Metadata API - Main Application
FastAPI facade over BigQuery metadata with session-scoped service account keys
"""

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.sessions import SessionMiddleware

from . import __version__
from .auth import AuthMiddleware, PrincipalSessionRegistry, init_firebase
from .clients import BACKENDS
from .config import Settings, get_settings, materialize_default_key, resolve_session_secret
from .credentials import SessionCredentialStore
from .exceptions import BigQueryAPIException
from .ratelimit import limiter
from .routers import health, service_account
from .routers.metadata import create_metadata_router
from .service import MetadataService

logger = structlog.get_logger()

# Metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)
REQUEST_LATENCY = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency'
)

# URL prefix per metadata backend
BACKEND_PREFIXES = {
    "api": "/api/bigquery",
    "sql": "/api/bigquery-jdbc",
}


def configure_logging(log_level: str) -> None:
    """Configure structured JSON logging on top of the stdlib logging module"""
    logging.basicConfig(format="%(message)s", level=log_level)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    settings = app.state.settings
    logger.info(
        "🚀 Starting BigQuery Metadata API",
        project_id=settings.gcp_project_id,
        backends=sorted(app.state.metadata_services),
        auth_required=settings.require_auth
    )

    if settings.require_auth:
        init_firebase(settings)

    yield

    # Remove a key that was written from GOOGLE_APPLICATION_CREDENTIALS_JSON
    materialized = app.state.materialized_key_path
    if materialized and os.path.exists(materialized):
        os.remove(materialized)
        logger.info("Removed materialized default key", path=materialized)

    logger.info("🛑 Shutting down BigQuery Metadata API")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI application"""
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    session_secret = resolve_session_secret(settings)

    app = FastAPI(
        title="BigQuery Metadata API",
        description="Browse BigQuery datasets, tables and schemas with per-session service accounts",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan
    )

    # Shared state
    default_key_path = materialize_default_key(settings)
    credential_store = SessionCredentialStore(settings.session_credentials_dir)
    backends = [name for name in BACKENDS if name != "sql" or settings.sql_backend_enabled]

    app.state.settings = settings
    app.state.default_key_path = default_key_path
    app.state.materialized_key_path = default_key_path if settings.service_account_json else None
    app.state.credential_store = credential_store
    app.state.principal_sessions = PrincipalSessionRegistry()
    app.state.metadata_services = {
        backend: MetadataService(settings, credential_store, backend, default_key_path)
        for backend in backends
    }

    # Bearer-token authentication, bound to the credential record when enabled
    app.add_middleware(AuthMiddleware, enabled=settings.require_auth)

    # Signed cookie carrying the opaque session credentials ID
    app.add_middleware(
        SessionMiddleware,
        secret_key=session_secret,
        session_cookie=settings.session_cookie_name,
        https_only=settings.session_https_only or settings.is_production,
        same_site="lax"
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Schema-Fidelity"]
    )

    # Add gzip compression
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Add rate limiting
    limiter.enabled = settings.rate_limit_enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Add request logging and metrics middleware
    @app.middleware("http")
    async def logging_and_metrics_middleware(request: Request, call_next):
        start_time = time.time()

        request_id = f"req_{uuid.uuid4().hex[:16]}"

        logger.info(
            "Incoming request",
            method=request.method,
            path=request.url.path,
            client_ip=get_remote_address(request),
            user_agent=request.headers.get("user-agent"),
            request_id=request_id
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            if settings.enable_metrics:
                REQUEST_COUNT.labels(
                    method=request.method,
                    endpoint=request.url.path,
                    status=500
                ).inc()

            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                duration=duration,
                request_id=request_id,
                exc_info=True
            )
            raise

        duration = time.time() - start_time
        if settings.enable_metrics:
            REQUEST_LATENCY.observe(duration)
            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=request.url.path,
                status=response.status_code
            ).inc()

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration:.3f}s"

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration=duration,
            request_id=request_id
        )
        return response

    # Exception handlers
    @app.exception_handler(BigQueryAPIException)
    async def bigquery_exception_handler(request: Request, exc: BigQueryAPIException):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "BigQuery Metadata API error",
            error=exc.detail,
            code=exc.code,
            status_code=exc.status_code,
            path=request.url.path
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.detail,
                "code": exc.code,
                "timestamp": time.time()
            },
            headers=exc.headers
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        logger.warning(
            "Request validation failed",
            path=request.url.path,
            errors=[error.get("msg") for error in errors]
        )
        detail = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
            for error in errors
        )
        return JSONResponse(
            status_code=400,
            content={
                "error": f"Invalid request: {detail}",
                "code": "VALIDATION_ERROR",
                "timestamp": time.time()
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.detail,
                "timestamp": time.time()
            },
            headers=exc.headers
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception",
            error=str(exc),
            path=request.url.path,
            exc_info=True
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "code": "INTERNAL_ERROR",
                "timestamp": time.time()
            }
        )

    # Include routers
    app.include_router(health.router, prefix="/health", tags=["health"])
    for backend in backends:
        app.include_router(
            create_metadata_router(backend),
            prefix=BACKEND_PREFIXES[backend],
            tags=[f"metadata-{backend}"]
        )
    app.include_router(
        service_account.router,
        prefix="/api/service-account",
        tags=["service-account"]
    )

    if settings.enable_metrics:
        @app.get("/metrics")
        async def metrics():
            """Prometheus metrics endpoint"""
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Root endpoint
    @app.get("/")
    async def root():
        """Root endpoint with API information"""
        return {
            "service": "BigQuery Metadata API",
            "version": __version__,
            "status": "healthy",
            "backends": {backend: BACKEND_PREFIXES[backend] for backend in backends},
            "docs": "/docs" if settings.debug else "disabled",
            "timestamp": time.time()
        }

    return app


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()

    uvicorn.run(
        "bq_metadata.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
        access_log=True,
        log_config=None  # Use structlog instead
    )
