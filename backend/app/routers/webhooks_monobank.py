"""Monobank webhook router"""
from fastapi import APIRouter, Request, HTTPException
from starlette.concurrency import run_in_threadpool

from app.core.database import SessionLocal
from app.core.exceptions import InvalidSignature
from app.services import payment_service
from app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


def _ingest(payload: bytes, signature: str):
    """Apply the callback in its own session; returns (payment_id, status) or None"""
    db = SessionLocal()
    try:
        payment = payment_service.ingest_webhook(db, payload, signature)
        if payment is None:
            return None
        # read while the session is open; the caller only sees plain values
        return payment.id, payment.status
    finally:
        db.close()


@router.post("/api/payments/webhook")
async def monobank_webhook(request: Request):
    """Monobank invoice callback (no session auth; X-Sign HMAC is verified)"""
    payload = await request.body()
    signature = request.headers.get("X-Sign", "")

    try:
        outcome = await run_in_threadpool(_ingest, payload, signature)
    except InvalidSignature:
        raise HTTPException(status_code=401)
    except Exception as e:
        # non-2xx makes the gateway redeliver
        logger.error(f"Monobank webhook processing error: {e}")
        raise

    if outcome is not None:
        payment_id, status = outcome
        logger.info(f"Monobank webhook processed: payment_id={payment_id}, status={status}")
    return {"received": True}
