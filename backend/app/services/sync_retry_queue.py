"""Delayed invoice re-sync queue (Redis sorted set scored by due time)"""
import time
from typing import Optional

import redis as sync_redis
from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis import get_sync_redis

logger = get_logger(__name__)

QUEUE_KEY = "payments:sync_retry"
ATTEMPTS_KEY = "payments:sync_retry:attempts"
BASE_DELAY_SECONDS = 60
MAX_DELAY_SECONDS = 3600


def _delay_for(attempts: int) -> int:
    return min(BASE_DELAY_SECONDS * (2 ** attempts), MAX_DELAY_SECONDS)


def schedule(invoice_id: str, r: Optional[sync_redis.Redis] = None, now: float = None):
    """Queue a status sync for ``invoice_id`` with exponential backoff"""
    r = r or get_sync_redis()
    attempts = int(r.hget(ATTEMPTS_KEY, invoice_id) or 0)
    due = (now or time.time()) + _delay_for(attempts)
    r.zadd(QUEUE_KEY, {invoice_id: due})
    logger.info(f"Sync retry scheduled: invoice={invoice_id}, attempt={attempts + 1}, due_in={_delay_for(attempts)}s")


def claim_due(r: Optional[sync_redis.Redis] = None, now: float = None, limit: int = 50) -> list[str]:
    """Pop due invoice ids; ZREM decides the winner when several schedulers drain at once"""
    r = r or get_sync_redis()
    due = r.zrangebyscore(QUEUE_KEY, "-inf", now or time.time(), start=0, num=limit)
    return [invoice_id for invoice_id in due if r.zrem(QUEUE_KEY, invoice_id)]


def record_failure(invoice_id: str, r: Optional[sync_redis.Redis] = None) -> bool:
    """Count a failed attempt and reschedule; False once the attempt budget is spent"""
    r = r or get_sync_redis()
    attempts = r.hincrby(ATTEMPTS_KEY, invoice_id, 1)
    if attempts >= settings.SYNC_RETRY_MAX_ATTEMPTS:
        r.hdel(ATTEMPTS_KEY, invoice_id)
        logger.error(f"Sync retry abandoned: invoice={invoice_id}, attempts={attempts}")
        return False
    schedule(invoice_id, r=r)
    return True


def clear(invoice_id: str, r: Optional[sync_redis.Redis] = None):
    r = r or get_sync_redis()
    r.zrem(QUEUE_KEY, invoice_id)
    r.hdel(ATTEMPTS_KEY, invoice_id)
