import logging

import redis
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.redis import get_redis

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/health/db")
async def health_db(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {"status": "ok", "database": "connected"}


@router.get("/health/redis")
async def health_redis():
    """Broker and pause-flag store; rounds cannot be queued without it."""
    try:
        await get_redis().ping()
    except redis.RedisError as exc:
        logger.warning("Redis health check failed: %s", exc)
        raise HTTPException(status_code=503, detail="Redis unavailable")
    return {"status": "ok", "redis": "connected"}
