from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from typing import Tuple
import redis.asyncio as redis

from api.src.db.database import get_db
from api.src.config import get_settings
from api.src.services.queue import get_queue_length

settings = get_settings()

router = APIRouter(tags=["health"])

async def check_database(db: AsyncSession) -> Tuple[bool, str]:
    try:
        await db.execute(text("SELECT 1"))
        return True, "connected"
    except Exception as e:
        return False, str(e)

async def check_redis() -> Tuple[bool, str]:
    client = redis.from_url(settings.redis_url)
    try:
        await client.ping()
        return True, "connected"
    except Exception as e:
        return False, str(e)
    finally:
        await client.close()

def _state(ok: bool) -> str:
    return "healthy" if ok else "unhealthy"

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "conveyor-api"}

@router.get("/health/db")
async def db_health_check(db: AsyncSession = Depends(get_db)):
    ok, detail = await check_database(db)
    return {"status": _state(ok), "database": detail}

@router.get("/health/redis")
async def redis_health_check():
    ok, detail = await check_redis()
    return {"status": _state(ok), "redis": detail}

@router.get("/health/queue")
async def queue_health_check():
    try:
        return {"status": "healthy", "queue_length": await get_queue_length()}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}

@router.get("/health/all")
async def full_health_check(db: AsyncSession = Depends(get_db)):
    """Combined health check for all services."""
    db_ok, db_detail = await check_database(db)
    redis_ok, redis_detail = await check_redis()

    queue_length = None
    if redis_ok:
        queue_length = await get_queue_length()

    return {
        "status": "healthy" if db_ok and redis_ok else "degraded",
        "services": {
            "api": "healthy",
            "database": "healthy" if db_ok else f"unhealthy: {db_detail}",
            "redis": "healthy" if redis_ok else f"unhealthy: {redis_detail}",
            "queue_length": queue_length,
        },
    }
