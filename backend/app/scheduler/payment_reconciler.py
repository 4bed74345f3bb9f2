"""Payment repair pass: lost webhooks, deferred syncs, SUCCESS payments left unactivated"""
from datetime import datetime
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.database import SessionLocal
from app.core.exceptions import GatewayRejected, GatewayUnavailable, NotFound
from app.core.redis import write_heartbeat
from app.services import payment_service, sync_retry_queue
from app.core.logging import get_logger

logger = get_logger(__name__)

JOB_ID = "payment_reconciler"


def drain_sync_retries(db: Session) -> int:
    """Run due invoice syncs queued by webhook ingestion"""
    try:
        due = sync_retry_queue.claim_due()
    except RedisError as e:
        logger.error(f"Sync retry queue unavailable: {e}")
        return 0

    synced = 0
    for invoice_id in due:
        try:
            payment_service.sync_status(db, invoice_id)
        except GatewayUnavailable as e:
            db.rollback()
            logger.warning(f"Sync retry failed: invoice={invoice_id} - {e}")
            sync_retry_queue.record_failure(invoice_id)
            continue
        except (GatewayRejected, NotFound) as e:
            db.rollback()
            logger.error(f"Sync retry dropped: invoice={invoice_id} - {e}")
            sync_retry_queue.clear(invoice_id)
            continue
        sync_retry_queue.clear(invoice_id)
        synced += 1
    return synced


def reconcile(now: datetime = None, db: Session = None) -> dict:
    now = now or utcnow()
    own_session = db is None
    if own_session:
        db = SessionLocal()
    try:
        result = {
            "activations_repaired": payment_service.repair_pending_activations(db),
            "retries_synced": drain_sync_retries(db),
            "open_payments_settled": payment_service.reconcile_open_payments(db, now),
        }
    except Exception as e:
        db.rollback()
        logger.error(f"Payment reconciliation error: {e}")
        raise
    finally:
        if own_session:
            db.close()

    write_heartbeat(JOB_ID)
    logger.info(f"Payment reconciliation: {result}")
    return result
