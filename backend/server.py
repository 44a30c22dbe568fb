"""
Recon Core API

FastAPI application for the reconciliation engine. Run with:

    uvicorn server:app --port 8001
"""

import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from config import get_settings, get_cors_config, validate_environment
from logging_config import setup_logging, get_logger, set_request_context, clear_request_context
from sentry_integration import init_sentry, capture_exception, set_tag
from database import init_db, dispose_db
from routers import health_router
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

SERVICE_NAME = "recon-core"

settings = get_settings()

setup_logging(level=settings.LOG_LEVEL, json_format=settings.is_production, service_name=SERVICE_NAME)
logger = get_logger(__name__)

if init_sentry(
    dsn=settings.SENTRY_DSN,
    environment=settings.ENVIRONMENT,
    release=settings.API_VERSION,
    traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE if settings.is_production else 0.0,
):
    set_tag("service", SERVICE_NAME)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.API_TITLE} {settings.API_VERSION} ({settings.ENVIRONMENT})")

    env_status = validate_environment()
    for error in env_status["errors"]:
        logger.error(f"Configuration error: {error}")
    for warning in env_status["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    if settings.is_production and not env_status["valid"]:
        raise RuntimeError("Refusing to start in production with invalid configuration")

    if settings.DATABASE_URL:
        await init_db()
    else:
        logger.warning("DATABASE_URL not set; reconciliation endpoints will fail until configured")

    yield

    logger.info("Shutting down")
    await dispose_db()


app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Matches bank debits to receipts and company expenses.

    - **Receipt Matcher**: exact (high) and close (medium, 5% / 3 days) pairings
    - **Statement Reconciler**: exact pairings plus amount discrepancies within one day
    - **Review**: statement summaries and scored suggestions

    Reconciliation endpoints require the X-Internal-Api-Key header.
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

api_router = APIRouter(prefix="/api")
api_router.include_router(health_router)
api_router.include_router(reconciliation_router)
app.include_router(api_router)

app.add_middleware(CORSMiddleware, **get_cors_config())


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Assign a request id, bind it to the log context and time the request."""
    request_id = request.headers.get("X-Request-ID") or f"req-{uuid.uuid4().hex[:12]}"
    set_request_context(request_id=request_id)
    started = time.perf_counter()

    try:
        response = await call_next(request)
    finally:
        clear_request_context()

    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(elapsed_ms)

    if response.status_code >= 400 or settings.debug_enabled:
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={"request_id": request_id, "status_code": response.status_code, "duration_ms": elapsed_ms}
        )
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Report unexpected errors; details are only returned outside production."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    event_id = capture_exception(exc, {"path": request.url.path, "method": request.method})

    content = {"detail": "Internal server error", "event_id": event_id}
    if not settings.is_production:
        content.update({"detail": str(exc), "type": type(exc).__name__})
    return JSONResponse(status_code=500, content=content)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("server:app", host="0.0.0.0", port=8001, reload=settings.debug_enabled)
