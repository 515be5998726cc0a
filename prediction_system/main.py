"""
Prediction System API

Mounts three surfaces on one app:
- /prediction  chat-bot compatible plain-text routes (FEATURE_LEGACY_ROUTES)
- /api         JSON API with the standard envelope
- /ws          viewer event stream (FEATURE_WEBSOCKETS)
"""
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from prediction_system.config.feature_flags import feature_flags
from prediction_system.config.settings import settings
from prediction_system.database import close_db, init_db
from prediction_system.errors import APIError, ErrorCode, ServiceUnavailableError, StorageFailure
from prediction_system.rate_limit import limiter
from prediction_system.realtime import ws_server
from prediction_system.realtime.events import get_notifier
from prediction_system.routes import legacy, router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)

LOCAL_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.SERVICE_NAME} {settings.VERSION} ({settings.ENVIRONMENT})")
    await init_db()

    yield

    logger.info("Closing event stream and database")
    try:
        await get_notifier().adapter.close()
    finally:
        await close_db()


app = FastAPI(
    title="Prediction System API",
    description="Score predictions for streaming channels",
    version=settings.VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=LOCAL_ORIGINS + settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)


# ================= EXCEPTION HANDLERS =================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    problems = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    logger.warning(f"Rejected payload on {request.url.path}: {len(problems)} problem(s)")
    return APIError(
        status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation Error", "Request validation failed",
        ErrorCode.VALIDATION_ERROR, {"errors": problems},
    ).to_response()


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=headers)

    code = ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.INVALID_INPUT
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        code = ErrorCode.AUTH_REQUIRED
    elif exc.status_code == status.HTTP_404_NOT_FOUND:
        code = ErrorCode.NOT_FOUND
    response = APIError(exc.status_code, "Error", str(exc.detail), code).to_response()
    if headers:
        response.headers.update(headers)
    return response


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}")
    return exc.to_response()


@app.exception_handler(StorageFailure)
async def storage_failure_handler(request: Request, exc: StorageFailure):
    logger.error(f"[{exc.log_id}] Storage failure on {request.url.path} during {exc.operation}")
    return ServiceUnavailableError(log_id=exc.log_id).to_response()


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_id = uuid.uuid4().hex[:8]
    logger.exception(f"[{log_id}] Unhandled {type(exc).__name__} on {request.url.path}")
    return APIError(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Error",
        "An unexpected error occurred. Please try again later.",
        ErrorCode.INTERNAL_ERROR, {"log_id": log_id},
    ).to_response()


# ================= ROUTES =================

@app.get("/health", tags=["Health"])
async def health_check():
    return {
        "status": "healthy",
        "service": settings.SERVICE_NAME,
        "environment": settings.ENVIRONMENT,
        "version": settings.VERSION,
        "features": feature_flags.get_all_flags(),
    }


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": "Prediction System API",
        "version": settings.VERSION,
        "docs": "/docs" if settings.is_development else None
    }


app.include_router(router, prefix="/api")

if feature_flags.FEATURE_LEGACY_ROUTES:
    app.include_router(legacy.router)
    logger.info("Legacy chat-bot routes mounted at /prediction")

if feature_flags.FEATURE_WEBSOCKETS:
    app.include_router(ws_server.router)
    logger.info("Viewer event stream mounted at /ws/channels/{name}")
