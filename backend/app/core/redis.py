from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
import redis as sync_redis
from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

HEARTBEAT_PREFIX = "scheduler:heartbeat:"
HEARTBEAT_TTL = 3600
SCHEDULER_JOB_IDS = ["expiration_sweeper", "payment_reconciler", "pending_cleaner"]

# async client (FastAPI)
redis_pool = aioredis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=20,
    decode_responses=True,
)


async def get_redis() -> aioredis.Redis:
    """FastAPI dependency: async Redis client"""
    return aioredis.Redis(connection_pool=redis_pool)


# sync client (services / scheduler)
sync_redis_pool = sync_redis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=10,
    decode_responses=True,
)


def get_sync_redis() -> sync_redis.Redis:
    """Sync Redis client"""
    return sync_redis.Redis(connection_pool=sync_redis_pool)


async def check_redis_connection() -> bool:
    """Redis connectivity check"""
    try:
        r = await get_redis()
        await r.ping()
        return True
    except Exception:
        return False


def write_heartbeat(job_id: str, now: Optional[datetime] = None):
    """Record the last successful run of a scheduler job (best effort)"""
    now = now or datetime.now(timezone.utc)
    try:
        get_sync_redis().set(f"{HEARTBEAT_PREFIX}{job_id}", now.isoformat(), ex=HEARTBEAT_TTL)
    except sync_redis.RedisError as e:
        logger.warning(f"Heartbeat not written: job={job_id} - {e}")


async def read_heartbeats(r: aioredis.Redis, job_ids: list[str]) -> dict:
    """Last-run timestamps per job (None when the job has not run within the TTL)"""
    values = await r.mget([f"{HEARTBEAT_PREFIX}{job_id}" for job_id in job_ids])
    return dict(zip(job_ids, values))
