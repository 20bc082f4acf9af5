"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and its
dependencies are reachable. Redis is optional (only rate limiting uses
it), so a missing Redis reports "disabled" rather than degrading health.
"""

from fastapi import APIRouter
from sqlalchemy import text

from tripgate import __version__
from tripgate.db.engine import engine
from tripgate.redis_pool import get_redis

router = APIRouter()


@router.get("/health")
async def health_check():
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    # Check the database
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"

    # Check Redis
    r = get_redis()
    if r is None:
        checks["redis"] = "disabled"
    else:
        try:
            await r.ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {e}"

    status = "healthy" if all(
        v in ("ok", "disabled") for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, **checks}
