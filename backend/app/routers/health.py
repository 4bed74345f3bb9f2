from fastapi import APIRouter, Depends
from app.core.database import check_db_connection
from app.core.redis import SCHEDULER_JOB_IDS, check_redis_connection, get_redis, read_heartbeats

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health_check(r=Depends(get_redis)):
    """DB / Redis connectivity and the last run of each scheduler job"""
    db_ok = check_db_connection()
    redis_ok = await check_redis_connection()

    heartbeats = {}
    if redis_ok:
        heartbeats = await read_heartbeats(r, SCHEDULER_JOB_IDS)

    status = "ok" if (db_ok and redis_ok) else "degraded"

    return {
        "status": status,
        "db": "connected" if db_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
        "scheduler": heartbeats,
    }
