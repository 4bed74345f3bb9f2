"""Abandoned checkout cleanup: stale CREATED/PENDING payments and their PENDING subscriptions"""
from datetime import datetime
from sqlalchemy.orm import Session

from app.core.clock import to_naive_utc, utcnow
from app.core.database import SessionLocal
from app.core.redis import write_heartbeat
from app.services import payment_service, subscription_service
from app.core.logging import get_logger

logger = get_logger(__name__)

JOB_ID = "pending_cleaner"


def cleanup(now: datetime = None, db: Session = None) -> dict:
    now = to_naive_utc(now) if now else utcnow()
    own_session = db is None
    if own_session:
        db = SessionLocal()
    try:
        result = {
            "subscriptions_cancelled": subscription_service.cancel_stale_pending(db, now),
            "payments_purged": payment_service.purge_abandoned_payments(db, now),
        }
    except Exception as e:
        db.rollback()
        logger.error(f"Pending cleanup error: {e}")
        raise
    finally:
        if own_session:
            db.close()

    write_heartbeat(JOB_ID)
    logger.info(f"Pending cleanup: {result}")
    return result
