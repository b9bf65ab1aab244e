"""clinidocs Main FastAPI App - patient document vault

Upload clinical documents for a patient and list them back with time-limited links.
Run with: uvicorn clinidocs.main:app --reload
Access at: http://localhost:8000/docs
"""

import logging
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinidocs.config import Settings, load_settings
from clinidocs.db import init_schema
from clinidocs.documents.errors import DocumentRequestError
from clinidocs.documents.router import cors_headers, router as documents_router
from clinidocs.services import ServiceContainer, build_services
from clinidocs.utils.health_check import HealthChecker
from clinidocs.utils.metrics import get_metrics_text


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


# ============================================================================
# ERROR RENDERING - every failure is {"error": ..., "warnings"?: ...}
# ============================================================================


async def document_error_handler(request: Request, exc: DocumentRequestError):
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.message)
    else:
        logger.info("Request rejected", path=request.url.path, status=exc.status_code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_json())


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = "Method not allowed" if exc.status_code == 405 else str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=exc.headers)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"error": "Invalid request"})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", path=request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def allowed_origin(allowed, origin: Optional[str]) -> Optional[str]:
    if "*" in allowed:
        return "*"
    if origin in allowed:
        return origin
    return None


def create_app(services: Optional[ServiceContainer] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the app; tests pass ready-made services, production builds them at startup"""
    settings = settings or (services.settings if services else load_settings())
    configure_logging(settings.log_level)

    app = FastAPI(
        title="clinidocs - Patient Document Vault",
        description="Upload and list clinical documents for trial patients",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.services = services
    health_checker = HealthChecker()

    @app.middleware("http")
    async def cors_middleware(request: Request, call_next):
        """Per-route CORS headers; browser preflights still reach the route's OPTIONS handler"""
        response = await call_next(request)
        origin = allowed_origin(settings.cors_allow_origins, request.headers.get("origin"))
        headers = cors_headers(request.url.path, origin) if origin is not None else {}
        for name, value in headers.items():
            response.headers[name] = value
        if headers and origin != "*":
            response.headers["vary"] = "Origin"
        return response

    app.add_exception_handler(DocumentRequestError, document_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(documents_router, tags=["Documents"])

    # ========================================================================
    # HEALTH CHECKS + METRICS
    # ========================================================================

    @app.get("/health")
    async def health_check():
        """Basic liveness check"""
        return await health_checker.liveness_check()

    @app.get("/health/live")
    async def health_live():
        """Kubernetes liveness probe"""
        return await health_checker.liveness_check()

    @app.get("/health/ready")
    async def health_ready(request: Request):
        """Kubernetes readiness probe"""
        return await health_checker.readiness_check(request.app.state.services)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        """Prometheus metrics endpoint"""
        return get_metrics_text()

    # ========================================================================
    # STARTUP/SHUTDOWN EVENTS
    # ========================================================================

    @app.on_event("startup")
    async def startup_event():
        """Build adapters once, create the schema and the storage container"""
        if app.state.services is None:
            app.state.services = build_services(settings)
        current = app.state.services

        await run_in_threadpool(init_schema, current.engine)
        state = await run_in_threadpool(current.storage.ensure_container)
        logger.info("clinidocs ready", container=current.storage.container, container_state=state.value)

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down clinidocs...")
        if app.state.services is not None:
            app.state.services.engine.dispose()

    return app


app = create_app()


if __name__ == "__main__":
    logger.info("Starting clinidocs server...")
    uvicorn.run("clinidocs.main:app", host="0.0.0.0", port=8000, reload=True)
