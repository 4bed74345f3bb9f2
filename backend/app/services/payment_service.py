"""Payments: checkout, webhook ingestion, status sync, cancellation, refunds and repair passes.

All status changes go through ``_apply_status``: one transition rule
(``payment_transitions.resolve_transition``) and one compare-and-swap write,
whichever channel (webhook, poll, user cancel, refund) reported the status.
"""
import hashlib
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import (
    AlreadyFinalized,
    AlreadyPaid,
    Conflict,
    GatewayRejected,
    GatewayUnavailable,
    InvalidSignature,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from app.core.logging import get_logger, log_with_data
from app.models.payment import Payment, OPEN_STATUSES, PURGEABLE_STATUSES
from app.models.subscription import Subscription, HOLDING_STATUSES
from app.schemas.payment import MonobankInvoiceEvent
from app.services import (
    ledger_service,
    monobank_service,
    notification_outbox,
    subscription_service,
    sync_retry_queue,
)
from app.services.payment_transitions import Transition, map_provider_status, resolve_transition

logger = get_logger(__name__)

MAX_CAS_ATTEMPTS = 3


def get_payment(db: Session, payment_id: int) -> Payment:
    payment = db.query(Payment).filter(Payment.id == payment_id).first()
    if not payment:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


def get_subscription_payments(db: Session, subscription_id: int) -> list[Payment]:
    return db.query(Payment).filter(
        Payment.subscription_id == subscription_id,
    ).order_by(Payment.attempt_number.desc(), Payment.id.desc()).all()


def get_user_payments(db: Session, user_id: int, page: int = 1, limit: int = 20) -> tuple[list[Payment], int]:
    query = db.query(Payment).filter(Payment.user_id == user_id)
    total = query.count()
    items = query.order_by(Payment.created_at.desc(), Payment.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return items, total


def _describe(db: Session, sub: Subscription) -> str:
    title = ledger_service.get_course_title(db, sub.course_id)
    if title:
        return f"Course subscription: {title}"[:255]
    return f"Subscription ({sub.period.replace('_', ' ')})"


# =========================================================
# checkout
# =========================================================

def start_checkout(
    db: Session,
    subscription_id: int,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    description: Optional[str] = None,
    redirect_url: Optional[str] = None,
) -> tuple[Payment, str]:
    """Open (or reuse) a gateway invoice for a PENDING subscription; returns the payment and checkout URL"""
    sub = subscription_service.get_subscription(db, subscription_id)
    if sub.status == "active" or ledger_service.has_successful_payment(db, sub.id):
        raise AlreadyPaid(f"Subscription {subscription_id} is already paid")
    if sub.status != "pending":
        raise InvalidTransition(
            f"Subscription {subscription_id} is {sub.status}, checkout is not possible",
            current=sub.status, requested="active",
        )

    amount = sub.price if amount is None else amount
    currency = currency or sub.currency
    if amount < sub.price:
        raise ValidationError(f"Amount must be at least the subscription price ({sub.price})")
    if currency != sub.currency:
        raise ValidationError(f"Currency must be {sub.currency}")

    now = utcnow()
    reusable = ledger_service.find_open_payment(
        db, sub.id, since=now - timedelta(seconds=settings.MONOBANK_INVOICE_VALIDITY_SECONDS),
    )
    if reusable and reusable.checkout_url and reusable.amount == amount:
        logger.info(f"Checkout reused: payment_id={reusable.id}, subscription_id={subscription_id}")
        return reusable, reusable.checkout_url

    reference = uuid.uuid4().hex
    attempt_number = ledger_service.count_payments(db, sub.id) + 1
    user_id = sub.user_id
    description = description or _describe(db, sub)
    # end the read transaction before the gateway round-trip
    db.commit()

    invoice = monobank_service.create_invoice(
        amount=amount,
        currency=currency,
        description=description,
        reference=reference,
        redirect_url=redirect_url,
    )

    payment = Payment(
        reference=reference,
        gateway_invoice_id=invoice.invoice_id,
        checkout_url=invoice.checkout_url,
        subscription_id=subscription_id,
        user_id=user_id,
        amount=amount,
        currency=currency,
        description=description,
        status="created",
        attempt_number=attempt_number,
        attempt_history=[ledger_service.history_entry("created", now, "checkout")],
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)

    logger.info(
        f"Checkout started: payment_id={payment.id}, invoice={invoice.invoice_id}, "
        f"subscription_id={subscription_id}, attempt={attempt_number}, amount={amount} {currency}"
    )
    return payment, invoice.checkout_url


# =========================================================
# status transitions
# =========================================================

def _record_anomaly(
    db: Session,
    payment: Payment,
    message: str,
    details: dict,
    level: str = "WARNING",
    event_type: str = "payment_transition_rejected",
):
    ledger_service.record_audit(
        db, level, event_type, message,
        user_id=payment.user_id,
        subscription_id=payment.subscription_id,
        payment_id=payment.id,
        details=details,
    )
    log_with_data(logger, logging.ERROR if level == "ERROR" else logging.WARNING, message, **details)


def _status_values(
    payment: Payment,
    incoming: str,
    now: datetime,
    source: str,
    event: Optional[MonobankInvoiceEvent] = None,
    reason: Optional[str] = None,
) -> dict:
    if reason is None and event is not None and incoming == "failed":
        reason = event.failure_description

    values = {
        "status": incoming,
        "attempt_history": list(payment.attempt_history or []) + [ledger_service.history_entry(incoming, now, source, reason)],
    }
    if incoming == "success":
        values["paid_at"] = now
    elif incoming == "failed":
        values["failed_at"] = now
        values["failure_reason"] = reason or "Payment failed"
    elif incoming == "cancelled":
        values["cancelled_at"] = now
    elif incoming == "refunded":
        values["refunded_at"] = now

    if event is not None:
        values["gateway_response"] = event.raw()
        if event.reference:
            values["gateway_reference"] = event.reference
        if event.approval_code:
            values["approval_code"] = event.approval_code
        if event.rrn:
            values["rrn"] = event.rrn
    return values


def _activate_for_payment(db: Session, payment: Payment):
    """Activation rides in the payment's transaction; a rejection is audited, not raised"""
    try:
        subscription_service.activate(db, payment.subscription_id, payment.id, commit=False)
    except (InvalidTransition, NotFound) as e:
        _record_anomaly(
            db, payment,
            f"Payment {payment.id} succeeded but subscription {payment.subscription_id} was not activated, refund required: {e.message}",
            {"reason": e.message, **e.details},
            level="ERROR",
            event_type="payment_not_activated",
        )


def _apply_status(
    db: Session,
    payment_id: int,
    incoming: str,
    source: str,
    event: Optional[MonobankInvoiceEvent] = None,
    allow_refund: bool = False,
    reason: Optional[str] = None,
) -> Payment:
    for _ in range(MAX_CAS_ATTEMPTS):
        payment = db.query(Payment).filter(Payment.id == payment_id).populate_existing().first()
        if not payment:
            raise NotFound(f"Payment {payment_id} not found")

        current = payment.status
        outcome = resolve_transition(current, incoming, allow_refund=allow_refund)
        if outcome is Transition.DUPLICATE:
            logger.info(f"Payment status unchanged: payment_id={payment_id}, status={current}, source={source}")
            db.commit()
            return payment
        if outcome is Transition.ANOMALY:
            _record_anomaly(
                db, payment,
                f"Rejected payment transition {current} -> {incoming}: payment_id={payment_id}, source={source}",
                {"current": current, "incoming": incoming, "source": source},
            )
            db.commit()
            return payment
        if incoming == "success" and event is not None and event.amount is not None and event.amount != payment.amount:
            _record_anomaly(
                db, payment,
                f"Amount mismatch on success: payment_id={payment_id}, expected={payment.amount}, reported={event.amount}",
                {"expected": payment.amount, "reported": event.amount, "source": source},
                level="ERROR",
                event_type="payment_amount_mismatch",
            )
            db.commit()
            return payment

        now = utcnow()
        values = _status_values(payment, incoming, now, source, event=event, reason=reason)
        if not ledger_service.transition_payment(db, payment_id, current, values):
            db.rollback()
            logger.info(f"Payment changed concurrently, re-reading: payment_id={payment_id}, expected={current}")
            continue

        if incoming == "success" and payment.subscription_id is not None:
            _activate_for_payment(db, payment)
        db.commit()
        notification_outbox.flush(db)

        db.refresh(payment)
        logger.info(f"Payment status: id={payment_id}, {current} -> {incoming}, source={source}")
        return payment

    raise Conflict(f"Payment {payment_id} kept changing concurrently, retry")


def _schedule_sync_retry(invoice_id: str):
    try:
        sync_retry_queue.schedule(invoice_id)
    except RedisError as e:
        # the open-payment poll picks it up instead
        logger.error(f"Sync retry not queued: invoice={invoice_id} - {e}")


def ingest_webhook(db: Session, raw_body: bytes, signature: Optional[str]) -> Optional[Payment]:
    """Verify and apply a gateway callback. Only InvalidSignature is raised"""
    if not monobank_service.verify_signature(raw_body, signature):
        ledger_service.record_audit(
            db, "ERROR", "webhook_invalid_signature",
            "Monobank webhook rejected: invalid signature",
            details={
                "signature_present": bool(signature),
                "body_length": len(raw_body),
                "body_sha256": hashlib.sha256(raw_body).hexdigest(),
            },
        )
        db.commit()
        logger.error(f"Webhook signature invalid: body_length={len(raw_body)}")
        raise InvalidSignature("Invalid signature")

    try:
        event = MonobankInvoiceEvent.model_validate_json(raw_body)
    except PydanticValidationError as e:
        logger.warning(f"Webhook discarded: unparseable payload ({e.error_count()} errors)")
        return None

    payment = ledger_service.find_payment_by_invoice(db, event.invoice_id)
    if not payment:
        logger.warning(f"Webhook discarded: unknown invoice={event.invoice_id}, status={event.status}")
        return None

    incoming = map_provider_status(event.status)
    if incoming is None:
        logger.warning(f"Webhook ignored: unmapped status={event.status}, invoice={event.invoice_id}")
        return payment

    if event.amount is not None and event.amount != payment.amount:
        logger.warning(
            f"Webhook amount differs, confirming with gateway: invoice={event.invoice_id}, "
            f"local={payment.amount}, webhook={event.amount}"
        )
        try:
            return sync_status(db, event.invoice_id)
        except GatewayUnavailable:
            _schedule_sync_retry(event.invoice_id)
            return payment
        except GatewayRejected as e:
            logger.error(f"Webhook confirmation rejected by gateway: invoice={event.invoice_id} - {e}")
            return payment

    return _apply_status(db, payment.id, incoming, "webhook", event=event)


def sync_status(db: Session, invoice_id: str) -> Payment:
    """Poll the gateway for an invoice and apply what it reports"""
    payment = ledger_service.find_payment_by_invoice(db, invoice_id)
    if not payment:
        raise NotFound(f"No payment for invoice {invoice_id}")
    payment_id = payment.id
    db.commit()

    event = monobank_service.get_invoice_status(invoice_id)
    incoming = map_provider_status(event.status)
    if incoming is None:
        logger.warning(f"Sync ignored: unmapped status={event.status}, invoice={invoice_id}")
        return get_payment(db, payment_id)
    return _apply_status(db, payment_id, incoming, "sync", event=event)


def cancel_payment(db: Session, payment_id: int) -> Payment:
    """Abandon an open checkout; a settled failure or cancellation is returned as is"""
    payment = get_payment(db, payment_id)
    if payment.status in ("success", "refunded"):
        raise AlreadyFinalized(f"Payment {payment_id} is {payment.status} and cannot be cancelled")
    if payment.status in ("failed", "cancelled"):
        return payment

    invoice_id = payment.gateway_invoice_id
    db.commit()
    if invoice_id:
        monobank_service.cancel_invoice(invoice_id)
    return _apply_status(db, payment_id, "cancelled", "cancel", reason="Cancelled by user")


def refund_payment(
    db: Session,
    payment_id: int,
    amount: Optional[int] = None,
    comment: Optional[str] = None,
    refunded_by: Optional[int] = None,
) -> Payment:
    """Refund a successful payment; a full refund cancels the subscription it activated"""
    payment = get_payment(db, payment_id)
    if payment.status == "refunded":
        raise AlreadyFinalized(f"Payment {payment_id} is already refunded")
    if payment.status != "success":
        raise InvalidTransition(
            f"Only successful payments can be refunded (current: {payment.status})",
            current=payment.status, requested="refunded",
        )
    if not payment.gateway_invoice_id:
        raise ValidationError(f"Payment {payment_id} has no gateway invoice")
    if amount is not None and (amount <= 0 or amount > payment.amount):
        raise ValidationError(f"Refund amount must be between 1 and {payment.amount}")

    invoice_id = payment.gateway_invoice_id
    partial = amount is not None and amount < payment.amount
    db.commit()

    monobank_service.refund_invoice(invoice_id, amount=amount, comment=comment)

    if partial:
        payment = get_payment(db, payment_id)
        ledger_service.record_audit(
            db, "INFO", "payment_partially_refunded",
            f"Partial refund {amount} of {payment.amount}: payment_id={payment_id}",
            user_id=payment.user_id, subscription_id=payment.subscription_id, payment_id=payment_id,
            details={"amount": amount, "comment": comment, "refunded_by": refunded_by},
        )
        db.commit()
        logger.info(f"Payment partially refunded: id={payment_id}, amount={amount}")
        return payment

    payment = _apply_status(db, payment_id, "refunded", "refund", allow_refund=True, reason=comment)
    if payment.status == "refunded" and payment.subscription_id is not None:
        sub = db.query(Subscription).filter(Subscription.id == payment.subscription_id).first()
        if sub and sub.status in HOLDING_STATUSES and sub.activated_by_payment_id == payment.id:
            subscription_service.cancel(
                db, sub.id,
                reason=comment or "Payment refunded",
                immediate=True,
                cancelled_by=refunded_by,
            )
    return payment


# =========================================================
# repair passes (scheduler)
# =========================================================

def repair_pending_activations(db: Session) -> int:
    """Activate PENDING subscriptions that already have a SUCCESS payment"""
    rows = db.query(Payment.id, Payment.subscription_id).join(
        Subscription, Subscription.id == Payment.subscription_id,
    ).filter(
        Payment.status == "success",
        Subscription.status == "pending",
    ).all()

    repaired = 0
    for payment_id, subscription_id in rows:
        try:
            subscription_service.activate(db, subscription_id, payment_id)
        except (InvalidTransition, NotFound) as e:
            db.rollback()
            logger.warning(f"Activation repair skipped: payment_id={payment_id}, subscription_id={subscription_id} - {e}")
            continue
        repaired += 1
        logger.info(f"Activation repaired: payment_id={payment_id}, subscription_id={subscription_id}")
    return repaired


def reconcile_open_payments(db: Session, now: datetime = None, limit: int = 100) -> int:
    """Poll open payments that have been quiet longer than OPEN_PAYMENT_POLL_MINUTES"""
    now = now or utcnow()
    quiet_since = now - timedelta(minutes=settings.OPEN_PAYMENT_POLL_MINUTES)
    rows = db.query(Payment.id, Payment.gateway_invoice_id, Payment.status).filter(
        Payment.status.in_(OPEN_STATUSES),
        Payment.gateway_invoice_id.isnot(None),
        Payment.updated_at < quiet_since,
    ).order_by(Payment.updated_at).limit(limit).all()

    changed = 0
    for payment_id, invoice_id, status in rows:
        try:
            payment = sync_status(db, invoice_id)
        except (GatewayUnavailable, GatewayRejected, NotFound) as e:
            db.rollback()
            logger.warning(f"Open payment poll failed: payment_id={payment_id}, invoice={invoice_id} - {e}")
            continue
        if payment.status != status:
            changed += 1
    return changed


def purge_abandoned_payments(db: Session, now: datetime = None) -> int:
    """Delete CREATED/PENDING payments past both the retention window and the invoice validity"""
    now = now or utcnow()
    window = max(
        timedelta(hours=settings.ABANDONED_PAYMENT_RETENTION_HOURS),
        timedelta(seconds=settings.MONOBANK_INVOICE_VALIDITY_SECONDS),
    )
    purged = ledger_service.purge_payments(db, PURGEABLE_STATUSES, now - window)
    db.commit()
    if purged:
        logger.info(f"Abandoned payments purged: {purged}")
    return purged
