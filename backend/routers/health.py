"""
Health and configuration probes.

- GET /api/ - Service banner
- GET /api/health - Database, schema and configuration checks (503 when unhealthy)
- GET /api/health/live - Liveness probe, no dependencies
- GET /api/config/status - Non-sensitive configuration report
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import get_settings, validate_environment
from database import get_engine, missing_tables
from reconciliation.mode_registry import mode_registry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/")
async def root():
    settings = get_settings()
    return {
        "message": settings.API_TITLE,
        "status": "healthy",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


async def _database_check() -> dict:
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        missing = await missing_tables(engine)
    except (SQLAlchemyError, OSError, ValueError) as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "disconnected", "error": type(e).__name__}

    return {
        "status": "connected" if not missing else "schema_incomplete",
        "type": engine.dialect.name,
        "missing_tables": missing,
    }


@router.get("/health")
async def health_check():
    """
    Readiness check for load balancers.

    Unhealthy (503) when the database is unreachable or a reconciliation
    table is missing; configuration problems are reported but not fatal.
    """
    settings = get_settings()
    database = await _database_check()
    env_status = validate_environment()

    health = {
        "status": "healthy" if database["status"] == "connected" else "unhealthy",
        "timestamp": _now(),
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
        "checks": {
            "database": database,
            "configuration": {
                "status": "valid" if env_status["valid"] else "invalid",
                "warnings": len(env_status["warnings"]),
                "errors": len(env_status["errors"]),
            },
            "modes": [m.value for m in mode_registry.get_enabled_modes()],
        },
    }

    if health["status"] != "healthy":
        raise HTTPException(status_code=503, detail=health)
    return health


@router.get("/health/live")
async def liveness_check():
    return {"status": "alive", "timestamp": _now()}


@router.get("/config/status")
async def config_status():
    """Configuration summary for deployment debugging. Errors are hidden in production."""
    settings = get_settings()
    env_status = validate_environment()

    return {
        "environment": settings.ENVIRONMENT,
        "debug": settings.debug_enabled,
        "cors_origins_count": len(settings.cors_origins_list),
        "reconciliation": {
            **settings.run_defaults(),
            "suggestion_limit": settings.SUGGESTION_LIMIT,
        },
        "configuration_valid": env_status["valid"],
        "warnings": env_status["warnings"],
        "variables": env_status["variables"],
        "errors": ["Hidden in production"] if settings.is_production else env_status["errors"],
    }
