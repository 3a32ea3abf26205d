"""
Door access control API: verification for door kiosks plus administration of
principals, doors and grants.
"""
import shutil
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from database.connection import Database
from storage.s3_client import S3Client
from storage.image_store import ImageStore
from storage.tasmota_client import TasmotaClient
from core.door_locks import KeyedLockRegistry
from core.face_recognizer import FaceRecognizer
from core.logger import logger
from middleware.security import (
    RateLimitMiddleware, SecurityHeadersMiddleware,
    setup_cors, setup_trusted_hosts
)
from middleware.auth_middleware import AuthRequiredMiddleware
from services.credential_matcher import CredentialMatcher
from services.verification_service import VerificationEngine
from routers.access import router as access_router
from routers.auth import router as auth_router
from routers.doors import router as doors_router
from routers.users import router as users_router


def build_image_store() -> ImageStore:
    """S3-backed store when enabled, local uploads directory otherwise."""
    s3_client = None
    if config.USE_S3:
        try:
            s3_client = S3Client(
                bucket_name=config.S3_BUCKET_NAME,
                aws_access_key_id=config.S3_ACCESS_KEY_ID,
                aws_secret_access_key=config.S3_SECRET_ACCESS_KEY,
                region_name=config.S3_REGION,
                endpoint_url=config.S3_ENDPOINT_URL,
                auto_create_bucket=True,
            )
        except Exception as e:
            logger.error(f"Failed to initialize S3 client: {e}", exc_info=True)
            logger.warning("Continuing without S3 - captures will be stored locally")
            s3_client = None
    else:
        logger.info("S3 storage disabled - using local storage")
    return ImageStore(config.UPLOADS_DIR, s3_client=s3_client, prefix=config.S3_CAPTURES_PREFIX)


def build_verification_engine() -> VerificationEngine:
    recognizer = FaceRecognizer(similarity_threshold=config.FACE_MATCH_THRESHOLD)
    return VerificationEngine(
        matcher=CredentialMatcher(recognizer),
        actuator=TasmotaClient(timeout=config.ACTUATOR_TIMEOUT_SECONDS),
        locks=KeyedLockRegistry(),
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Initialize database, capture store and verification engine on startup.
    """
    logger.info("=" * 60)
    logger.info(f"Starting {config.APP_NAME}...")
    logger.info("=" * 60)

    try:
        config.db = Database(
            database_url=config.DATABASE_URL,
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW
        )
        config.db.create_tables()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}", exc_info=True)
        raise

    config.image_store = build_image_store()
    config.verification_engine = build_verification_engine()

    logger.info("Server ready!")
    logger.info(f"Environment: {config.ENVIRONMENT}")
    logger.info("=" * 60)

    yield

    # Cleanup on shutdown
    logger.info("Shutting down...")
    if config.db:
        config.db.engine.dispose()
        logger.info("Database connections closed")


# Initialize FastAPI app
app = FastAPI(
    title=config.APP_NAME,
    description="Door access control with access codes, face descriptors and step-up verification",
    version=config.APP_VERSION,
    lifespan=lifespan
)

# Setup security middleware
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    RateLimitMiddleware,
    requests_per_minute=config.RATE_LIMIT_PER_MINUTE,
    requests_per_hour=config.RATE_LIMIT_PER_HOUR
)
app.add_middleware(AuthRequiredMiddleware)
setup_cors(app, config.CORS_ORIGINS, allow_credentials=config.CORS_ALLOW_CREDENTIALS)
if config.ENVIRONMENT == "production":
    setup_trusted_hosts(app, config.TRUSTED_HOSTS)

# Include routers
app.include_router(access_router)
app.include_router(auth_router)
app.include_router(users_router)
app.include_router(doors_router)


# Error responses share one shape: {"success": false, "message": ...}
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", []) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=422, content={"success": False, "message": message})


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Server error"})


@app.get("/")
async def root():
    """Root endpoint with API information. Public endpoint."""
    return {
        "message": config.APP_NAME,
        "version": config.APP_VERSION,
        "environment": config.ENVIRONMENT,
        "endpoints": {
            "verify_code": "POST /api/access/code",
            "verify_face": "POST /api/access/face",
            "double_verify": "POST /api/access/double-verify",
            "motion": "POST /api/access/motion",
            "logs": "GET /api/access/logs"
        },
        "docs": "/docs",
        "s3_enabled": bool(config.image_store and config.image_store.s3_client)
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring. Public endpoint."""
    health_status = {
        "status": "healthy",
        "timestamp": time.time(),
        "checks": {}
    }

    # Check database
    try:
        if config.db is None:
            health_status["checks"]["database"] = {"status": "error", "error": "not initialized"}
            health_status["status"] = "degraded"
        else:
            with config.db.get_session() as db:
                db.execute(text("SELECT 1"))
            health_status["checks"]["database"] = {"status": "ok"}
    except SQLAlchemyError as e:
        health_status["checks"]["database"] = {"status": "error", "error": str(e)}
        health_status["status"] = "degraded"

    # Check capture storage
    store = config.image_store
    if store is not None and store.s3_client is not None:
        health_status["checks"]["s3"] = {"status": "ok", "enabled": True, "bucket": store.s3_client.bucket_name}
    else:
        health_status["checks"]["s3"] = {"status": "disabled", "enabled": False}

    # Check disk space
    try:
        disk_usage = shutil.disk_usage(config.UPLOADS_DIR)
        free_gb = disk_usage.free / (1024 ** 3)
        health_status["checks"]["disk"] = {
            "free_gb": round(free_gb, 2),
            "percent_free": round((disk_usage.free / disk_usage.total) * 100, 2)
        }
        if free_gb < 1:
            health_status["status"] = "degraded"
    except OSError as e:
        health_status["checks"]["disk"] = {"error": str(e)}

    return health_status


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
