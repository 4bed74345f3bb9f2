"""Trigger endpoint for an external scheduler (cron, Cloud Scheduler)"""
import secrets
from fastapi import APIRouter, Header, HTTPException
from app.core.config import settings
from app.schemas.subscription import SweepReportResponse
from app.scheduler import expiration_sweeper
from app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


@router.post("/sweep", response_model=SweepReportResponse)
def run_sweep(x_scheduler_token: str = Header(default="")):
    """Run one expiration sweep now"""
    if not settings.SCHEDULER_TOKEN:
        raise HTTPException(status_code=403, detail="Scheduler trigger is disabled")
    if not secrets.compare_digest(x_scheduler_token, settings.SCHEDULER_TOKEN):
        logger.warning("Scheduler trigger rejected: bad token")
        raise HTTPException(status_code=401, detail="Invalid scheduler token")

    report = expiration_sweeper.run()
    return SweepReportResponse(expired=report.expired, reminded=report.reminded, failures=report.failures)
