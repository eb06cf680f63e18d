"""Health endpoints: liveness and readiness."""
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from livehub.core.config import settings
from livehub.db.database import AsyncSessionLocal, database_enabled
from livehub.services.hub_state import get_hub
from livehub.services.live_broadcast import HubState
from livehub.services.redis_client import get_redis

router = APIRouter(tags=["health"])
logger = logging.getLogger("livehub.health")


@router.get("/health/live")
async def liveness():
    """Liveness: process is running. No dependencies checked."""
    return {"status": "ok"}


@router.get("/health/ready")
async def readiness():
    """Readiness: hub running; DB and Redis reachable when configured."""
    errors = []
    try:
        if get_hub().state in (HubState.COMPLETED, HubState.FAILED):
            errors.append("hub")
    except RuntimeError:
        errors.append("hub")

    if database_enabled():
        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("DB readiness check failed: %s", e)
            errors.append("database")

    if settings.REDIS_ENABLED:
        try:
            r = await get_redis()
            await r.ping()
        except Exception as e:
            logger.warning("Redis readiness check failed: %s", e)
            errors.append("redis")

    if errors:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "errors": errors},
        )
    return {"status": "ok"}
