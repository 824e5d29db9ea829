"""Main FastAPI application"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text
from datetime import datetime, timezone
from pathlib import Path
import logging
import traceback
import time
import uuid

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from fastapi.responses import Response

from clinic_auth.config import settings
from clinic_auth.core.database import init_db, SessionLocal
from clinic_auth.core.exceptions import BaseAPIException, RateLimitExceededError
from clinic_auth.core.metrics import REQUEST_COUNT, REQUEST_LATENCY, RATE_LIMIT_REJECTIONS
from clinic_auth.schemas.response import ErrorResponse, RateLimitErrorResponse
from clinic_auth.api.deps import request_identifier
from clinic_auth.api.v1 import auth, rate_limiting
from clinic_auth.services.cleanup_worker import cleanup_worker
from clinic_auth.services.rate_limiter import rate_limiter

# Configure logging - ensure log directory exists
_log_dir = Path(settings.get_log_file()).parent
_log_dir.mkdir(parents=True, exist_ok=True)
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.get_log_file()),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def rate_limit_response(message: str, retry_after: int) -> JSONResponse:
    """429 envelope shared by the login guard and the general limiter"""
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=RateLimitErrorResponse(message=message, timestamp=_timestamp()).model_dump(),
        headers={"Retry-After": str(retry_after)},
    )


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None
)

# GZip compression for large responses
app.add_middleware(GZipMiddleware, minimum_size=500)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _is_rate_limited_path(path: str) -> bool:
    if not path.startswith(f"{settings.API_PREFIX}/"):
        return False
    return not any(
        path == excluded or path.startswith(excluded.rstrip("/") + "/")
        for excluded in settings.RATE_LIMIT_EXCLUDED_PATHS
    )


# General rate limiting; registered first so it runs inside the header middleware
@app.middleware("http")
async def enforce_rate_limit(request: Request, call_next):
    """Count the request against its identifier and reject when over limit"""
    if not settings.RATE_LIMIT_ENABLED or not _is_rate_limited_path(request.url.path):
        return await call_next(request)

    token = None
    authorization = request.headers.get("Authorization", "")
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()

    identifier = request_identifier(request, token)
    decision = rate_limiter.check(identifier)
    if not decision.allowed:
        RATE_LIMIT_REJECTIONS.labels(decision.state).inc()
        if decision.state == rate_limiter.BLOCKED:
            message = "Too many requests. You have been temporarily blocked."
        else:
            message = "Too many requests. Please slow down."
        logger.warning("Rate limit %s for %s on %s", decision.state, identifier, request.url.path)
        return rate_limit_response(message, decision.retry_after)

    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    return response


# Security headers + request timing middleware
@app.middleware("http")
async def add_headers_and_timing(request: Request, call_next):
    """Add security headers and log slow requests"""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    start = time.time()
    response = await call_next(request)
    duration = time.time() - start

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["X-Request-ID"] = request_id

    REQUEST_COUNT.labels(request.method, request.url.path, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, request.url.path).observe(duration)

    if duration > 1.0:
        logger.warning(
            "Slow request: %s %s took %.2fs request_id=%s",
            request.method,
            request.url.path,
            duration,
            request_id,
        )

    return response


# Exception handlers
@app.exception_handler(RateLimitExceededError)
async def rate_limit_exception_handler(request: Request, exc: RateLimitExceededError):
    """Render throttling errors with a Retry-After hint"""
    logger.warning(f"Rate limited: {exc.message}", extra={"path": request.url.path})
    return rate_limit_response(exc.message, exc.retry_after)


@app.exception_handler(BaseAPIException)
async def api_exception_handler(request: Request, exc: BaseAPIException):
    """Handle custom API exceptions"""
    logger.error(
        f"API Exception: {exc.message}",
        extra={
            "status_code": exc.status_code,
            "details": exc.details,
            "path": request.url.path,
            "method": request.method
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.message,
            details=exc.details,
            path=request.url.path,
            timestamp=_timestamp(),
        ).model_dump()
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors"""
    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        })

    logger.warning(
        f"Validation error: {errors}",
        extra={"path": request.url.path, "method": request.method}
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(
            error="Validation failed",
            details=errors,
            path=request.url.path,
            timestamp=_timestamp(),
        ).model_dump()
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    """Handle database errors"""
    logger.error(
        f"Database error: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "traceback": traceback.format_exc()
        }
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="A database error occurred. Please try again later.",
            path=request.url.path,
            timestamp=_timestamp(),
        ).model_dump(exclude_none=True)
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions"""
    logger.critical(
        f"Unhandled exception: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "traceback": traceback.format_exc()
        }
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="An unexpected error occurred. Our team has been notified.",
            path=request.url.path,
            timestamp=_timestamp(),
        ).model_dump(exclude_none=True)
    )


# Startup event
@app.on_event("startup")
async def startup_event():
    """Initialize application on startup"""
    settings.validate_security_settings()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    # Initialize database
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    # Create admin user if doesn't exist
    try:
        from clinic_auth.services.user_service import user_service

        db = SessionLocal()
        try:
            user_service.ensure_admin(db)
        finally:
            db.close()
    except SQLAlchemyError as e:
        logger.error(f"Failed to create admin user: {e}")

    if settings.RUN_EMBEDDED_CLEANUP:
        cleanup_worker.start()


# Shutdown event
@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    if cleanup_worker.is_running():
        cleanup_worker.stop()
    logger.info(f"Shutting down {settings.APP_NAME}")


# Health check endpoint
@app.get("/health")
@app.get(f"{settings.API_PREFIX}/health")
async def health_check():
    """Health check endpoint"""
    db_ok = True
    db_error = None
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        db_ok = False
        db_error = str(exc)
    finally:
        db.close()

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.APP_VERSION,
        "timestamp": _timestamp(),
        "readiness": {
            "database": {"ok": db_ok, "error": db_error},
            "cleanup_worker": cleanup_worker.status(),
            "rate_limit_identifiers": len(rate_limiter.store),
        },
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "docs": "/api/docs" if settings.DEBUG else "disabled"
    }


# Include routers
app.include_router(auth.router, prefix=f"{settings.API_PREFIX}/auth", tags=["Authentication"])
app.include_router(rate_limiting.router, prefix=f"{settings.API_PREFIX}/rate-limiting", tags=["Rate Limiting"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clinic_auth.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS
    )
