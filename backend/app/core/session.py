"""Session lookup: sessions are created by the auth service and shared through Redis"""
import time
from typing import Optional
import redis.asyncio as aioredis
from app.core.config import settings

SESSION_PREFIX = "session:"
SESSION_TTL = settings.SESSION_TIMEOUT_MINUTES * 60  # seconds


async def get_session(r: aioredis.Redis, session_id: str) -> Optional[dict]:
    """Fetch session data; each access refreshes the idle TTL"""
    if not session_id:
        return None
    key = f"{SESSION_PREFIX}{session_id}"
    data = await r.hgetall(key)
    if not data:
        return None
    await r.expire(key, SESSION_TTL)
    await r.hset(key, "last_accessed", str(int(time.time())))
    return data
