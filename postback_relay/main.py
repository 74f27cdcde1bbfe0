"""
FastAPI application main module.
Postback intake, deposit notifications and the scheduled deposit audit.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException as StarletteHTTPException
import asyncio
import time
import os
from contextlib import asynccontextmanager
from postback_relay.api.v1 import api_router
from postback_relay.api.v1.endpoints import postback
from postback_relay.utils import bind_request_id, get_logger, reset_request_id, setup_logging
from postback_relay.utils.observability import REQUEST_ID_HEADER, ensure_request_id
from postback_relay.utils.time import utc_now
from postback_relay.database import engine
from postback_relay.database import Base
from postback_relay.config import AUDIT_SCHEDULER_ENABLED, validate_channel_configuration
from postback_relay.exceptions import ValidationError
from postback_relay.services.registry import build_services

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/app.log"),
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "postback-relay"
SERVICE_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Application startup initiated")
    services = None
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")

        services = build_services()
        app.state.services = services  # type: ignore[attr-defined]

        channel_report = validate_channel_configuration()
        if channel_report["valid"]:
            logger.info("Channel configuration validated", **channel_report)
        else:
            logger.error("Channel configuration invalid", **channel_report)

        services.dedup.start()
        logger.info("Dedup cache sweeper started")

        if AUDIT_SCHEDULER_ENABLED:
            services.scheduler.start()
        else:
            logger.info("Audit scheduler not enabled; skipping startup")
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if services is not None:
            services.scheduler.stop()
            await services.dedup.stop()
        logger.info("Application shutdown completed")

app = FastAPI(
    title="Postback Relay",
    description="""
    Payment gateway postback relay with attribution and subscriber notifications.

    ## Features
    * **Postback intake** - GET or POST, query string, JSON or form body
    * **Attribution** - Conversion lookup in the tracking platform with a single indexing retry
    * **Fallback attribution** - Known source tokens resolve to a target channel
    * **Deduplication** - Identifiers are processed once per 24 hours
    * **Notifications** - Broadcast to approved subscribers with a delivery log
    * **Deposit audit** - Daily, weekly and emergency reconciliation against the delivery log

    ## Authentication
    Audit endpoints require the admin token:
    ```
    Authorization: Bearer <ADMIN_API_TOKEN>
    ```
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)

@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """Bind the request id for every log line of the request and time it."""
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    token = bind_request_id(request_id)
    started = time.perf_counter()
    try:
        logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            remote_addr=request.client.host if request.client else "unknown",
        )
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time"] = str(elapsed_ms)
        logger.info("Request completed", path=request.url.path, status_code=response.status_code, process_time_ms=elapsed_ms)
        return response
    finally:
        reset_request_id(token)


def _error_response(request: Request, status_code: int, message: str, details=None, headers=None) -> JSONResponse:
    """Error envelope shared by every handler: success/message/request_id/timestamp[/details]."""
    body = {
        "success": False,
        "message": message,
        "request_id": getattr(request.state, "request_id", "unknown"),
        "timestamp": utc_now().isoformat(),
    }
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body, headers=headers)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = jsonable_encoder(exc.errors())
    logger.warning("Request validation failed", errors=errors, path=request.url.path, method=request.method)
    return _error_response(request, 400, "Request validation failed", errors)

@app.exception_handler(ValidationError)
async def domain_validation_exception_handler(request: Request, exc: ValidationError):
    """Malformed postback bodies (bad JSON, non-object payloads)."""
    logger.warning("Malformed request", error=str(exc), path=request.url.path)
    return _error_response(request, 400, str(exc), exc.details)

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail, path=request.url.path)
    return _error_response(request, exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=getattr(request.state, "request_id", None),
        path=request.url.path,
        exc_info=True
    )
    return _error_response(request, 500, "Internal server error")

# Health check endpoints
@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
    }

@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check(request: Request):
    """Detailed health check with database and upstream status."""
    health_status = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "checks": {}
    }
    services = getattr(request.app.state, "services", None)
    if services is None:
        health_status["status"] = "starting"
        return health_status

    try:
        await asyncio.to_thread(services.delivery_logs.ping)
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    keitaro = await services.keitaro.check_health()
    health_status["checks"]["keitaro"] = keitaro
    telegram = await services.transport.check_health()
    health_status["checks"]["telegram"] = telegram
    if not (keitaro.get("healthy") and telegram.get("healthy")) and health_status["status"] == "healthy":
        health_status["status"] = "degraded"

    health_status["checks"]["circuit_breaker"] = services.circuit_breaker.snapshot()
    health_status["checks"]["dedup_cache"] = services.dedup.stats()
    health_status["checks"]["scheduler_running"] = services.scheduler.is_running
    return health_status

@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Postback Relay API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "postback": "/postback",
        "api_base": "/api/v1"
    }

# Gateways are configured with the bare path; the versioned router exposes it too
app.include_router(postback.router, prefix="/postback", tags=["postback"])
app.include_router(api_router, prefix="/api/v1")

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "postback_relay.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        reload_dirs=["postback_relay"],
        log_level="info",
        access_log=True
    )
