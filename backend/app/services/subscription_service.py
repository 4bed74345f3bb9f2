"""Subscription lifecycle: enroll, activate, cancel, renew, complete, expire"""
import calendar
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import exists
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import to_naive_utc, utcnow
from app.core.config import settings
from app.core.exceptions import (
    AlreadyCancelled,
    CapacityExceeded,
    Conflict,
    DuplicateActiveSubscription,
    GatewayRejected,
    GatewayUnavailable,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from app.core.logging import get_logger
from app.models.course import Course
from app.models.payment import Payment, OPEN_STATUSES, PURGEABLE_STATUSES
from app.models.subscription import (
    Subscription,
    CURRENCIES,
    HOLDING_STATUSES,
    PERIOD_MONTHS,
    build_active_key,
)
from app.models.user import User
from app.services import ledger_service, monobank_service, notification_outbox

logger = get_logger(__name__)

# next billing date is this far ahead of end_date while auto-renewal is on
BILLING_LEAD = timedelta(days=7)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _next_billing_date(end_date: datetime, auto_renewal: bool) -> Optional[datetime]:
    return end_date - BILLING_LEAD if auto_renewal and end_date else None


def get_subscription(db: Session, subscription_id: int) -> Subscription:
    sub = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    if not sub:
        raise NotFound(f"Subscription {subscription_id} not found")
    return sub


def list_user_subscriptions(db: Session, user_id: int, status: str = None) -> list[Subscription]:
    query = db.query(Subscription).filter(Subscription.user_id == user_id)
    if status:
        query = query.filter(Subscription.status == status)
    return query.order_by(Subscription.created_at.desc(), Subscription.id.desc()).all()


# =========================================================
# enroll
# =========================================================

def enroll(
    db: Session,
    user_id: int,
    price: int,
    currency: str = "UAH",
    course_id: Optional[int] = None,
    period: Optional[str] = None,
) -> Subscription:
    """Create a PENDING subscription and reserve a course capacity slot.

    ``price`` is in minor units. A course subscription defaults to
    DEFAULT_COURSE_PERIOD; a period subscription must name its period.
    """
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound(f"User {user_id} not found")
    if not user.is_active:
        raise ValidationError("User account is inactive")
    if price is None or price <= 0:
        raise ValidationError("Price must be positive")
    if currency not in CURRENCIES:
        raise ValidationError(f"Unsupported currency: {currency}")

    if course_id is not None:
        course = db.query(Course).filter(Course.id == course_id).first()
        if not course:
            raise NotFound(f"Course {course_id} not found")
        if not course.is_active or not course.is_published:
            raise ValidationError("Course is not open for enrollment")
        kind = "course"
        period = period or settings.DEFAULT_COURSE_PERIOD
    else:
        if not period:
            raise ValidationError("Either course_id or period is required")
        kind = "period"

    if period not in PERIOD_MONTHS:
        raise ValidationError(f"Unsupported period: {period}")

    if course_id is not None and ledger_service.find_holding_subscription(db, user_id, course_id):
        raise DuplicateActiveSubscription(f"User {user_id} already has a pending or active subscription to course {course_id}")

    sub = Subscription(
        user_id=user_id,
        course_id=course_id,
        kind=kind,
        status="pending",
        period=period,
        active_key=build_active_key(user_id, course_id),
        price=price,
        currency=currency,
        paid_amount=0,
    )
    try:
        if course_id is not None and not ledger_service.claim_course_slot(db, course_id):
            db.rollback()
            raise CapacityExceeded(f"Course {course_id} is full")
        db.add(sub)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateActiveSubscription(f"User {user_id} already has a pending or active subscription to course {course_id}")

    db.refresh(sub)
    logger.info(f"Subscription created: id={sub.id}, user_id={user_id}, course_id={course_id}, kind={kind}, period={period}")
    return sub


# =========================================================
# activate
# =========================================================

def activate(db: Session, subscription_id: int, payment_id: int, commit: bool = True) -> Subscription:
    """PENDING -> ACTIVE, triggered by the payment that reached SUCCESS.

    Idempotent for the payment that already activated the subscription.
    Validation happens before any write, so with ``commit=False`` a raised
    error leaves the caller's transaction untouched.
    """
    sub = get_subscription(db, subscription_id)
    if sub.status == "active" and sub.activated_by_payment_id == payment_id:
        return sub
    if sub.status != "pending":
        raise InvalidTransition(
            f"Subscription {subscription_id} cannot be activated from {sub.status}",
            current=sub.status, requested="active",
        )

    # column query: bypasses the identity map so a status written in this transaction is visible
    payment = db.query(Payment.status, Payment.subscription_id, Payment.amount).filter(Payment.id == payment_id).first()
    if not payment:
        raise NotFound(f"Payment {payment_id} not found")
    if payment.subscription_id != subscription_id or payment.status != "success":
        raise InvalidTransition(
            f"Payment {payment_id} ({payment.status}) cannot activate subscription {subscription_id}",
            current=sub.status, requested="active",
        )
    if payment.amount < sub.price:
        raise InvalidTransition(
            f"Payment {payment_id} covers {payment.amount} of {sub.price}, subscription {subscription_id} not activated",
            current=sub.status, requested="active",
        )

    now = utcnow()
    end_date = add_months(now, PERIOD_MONTHS[sub.period])
    changed = ledger_service.transition_subscription(db, sub, ("pending",), {
        "status": "active",
        "start_date": now,
        "end_date": end_date,
        "paid_amount": payment.amount,
        "payment_date": now,
        "activated_by_payment_id": payment_id,
        "next_billing_date": _next_billing_date(end_date, sub.auto_renewal),
        "expiry_notification_sent": False,
    })
    if not changed:
        # lost the race to another activation
        if sub.status == "active" and sub.activated_by_payment_id == payment_id:
            return sub
        raise InvalidTransition(
            f"Subscription {subscription_id} changed concurrently to {sub.status}",
            current=sub.status, requested="active",
        )

    notification_outbox.queue(
        db, "activated", sub.user_id, subscription_id=sub.id,
        course_title=ledger_service.get_course_title(db, sub.course_id),
        end_date=notification_outbox.format_date(end_date),
    )
    if commit:
        db.commit()
        notification_outbox.flush(db)

    logger.info(f"Subscription activated: id={subscription_id}, payment_id={payment_id}, end_date={end_date}")
    return sub


# =========================================================
# cancel
# =========================================================

def cancel(
    db: Session,
    subscription_id: int,
    reason: str = None,
    immediate: bool = False,
    cancelled_by: int = None,
) -> Subscription:
    """Cancel now (slot released) or at period end (ACTIVE kept, auto-renewal off)"""
    sub = get_subscription(db, subscription_id)
    if sub.status == "cancelled":
        raise AlreadyCancelled(f"Subscription {subscription_id} is already cancelled")
    if sub.status not in HOLDING_STATUSES:
        raise InvalidTransition(
            f"Subscription {subscription_id} is {sub.status} and cannot be cancelled",
            current=sub.status, requested="cancelled",
        )

    now = utcnow()
    values = {
        "auto_renewal": False,
        "next_billing_date": None,
        "cancellation_reason": reason,
        "cancelled_at": now,
        "cancelled_by": cancelled_by,
    }
    from_status = sub.status
    deferred = from_status == "active" and not immediate
    if deferred:
        if sub.cancelled_at is not None:
            raise AlreadyCancelled(f"Subscription {subscription_id} is already scheduled for cancellation")
        changed = ledger_service.transition_subscription(
            db, sub, ("active",), values, Subscription.cancelled_at.is_(None),
        )
    else:
        values["status"] = "cancelled"
        if from_status == "active":
            values["end_date"] = now
        changed = ledger_service.transition_subscription(db, sub, (from_status,), values)

    if not changed:
        db.rollback()
        raise Conflict(f"Subscription {subscription_id} changed concurrently, retry")

    notification_outbox.queue(
        db, "cancelled", sub.user_id, subscription_id=sub.id,
        course_title=ledger_service.get_course_title(db, sub.course_id),
        end_date=notification_outbox.format_date(sub.end_date),
        immediate=not deferred,
        reason=reason,
    )
    db.commit()
    notification_outbox.flush(db)

    if from_status == "pending":
        _void_unpaid_invoices(db, subscription_id, reason)

    logger.info(f"Subscription cancelled: id={subscription_id}, from={from_status}, deferred={deferred}, by={cancelled_by}")
    return sub


def _void_unpaid_invoices(db: Session, subscription_id: int, reason: Optional[str]):
    """Remove the unpaid invoices of a subscription that can no longer activate.

    PROCESSING payments are left to settle; a late success is audited for refund.
    """
    unpaid = db.query(Payment.id, Payment.status, Payment.gateway_invoice_id, Payment.attempt_history).filter(
        Payment.subscription_id == subscription_id,
        Payment.status.in_(PURGEABLE_STATUSES),
    ).all()
    for payment in unpaid:
        if payment.gateway_invoice_id:
            try:
                monobank_service.cancel_invoice(payment.gateway_invoice_id)
            except (GatewayUnavailable, GatewayRejected) as e:
                logger.error(f"Invoice not voided: payment_id={payment.id}, invoice={payment.gateway_invoice_id} - {e}")
                continue
        now = utcnow()
        history = list(payment.attempt_history or []) + [
            ledger_service.history_entry("cancelled", now, "subscription_cancel", reason),
        ]
        if ledger_service.transition_payment(db, payment.id, payment.status, {
            "status": "cancelled",
            "cancelled_at": now,
            "attempt_history": history,
        }):
            logger.info(f"Payment voided with its subscription: payment_id={payment.id}, subscription_id={subscription_id}")
        db.commit()


# =========================================================
# renew / complete
# =========================================================

def renew(db: Session, subscription_id: int, period: str, auto_renewal: bool = False) -> Subscription:
    """Extend an ACTIVE subscription; a lapsed one has to enroll again"""
    if period not in PERIOD_MONTHS:
        raise ValidationError(f"Unsupported period: {period}")
    sub = get_subscription(db, subscription_id)
    if sub.status != "active":
        raise InvalidTransition(
            f"Only active subscriptions can be renewed (current: {sub.status})",
            current=sub.status, requested="active",
        )

    previous_end = sub.end_date
    new_end = add_months(previous_end, PERIOD_MONTHS[period])
    changed = ledger_service.transition_subscription(
        db, sub, ("active",), {
            "period": period,
            "end_date": new_end,
            "auto_renewal": auto_renewal,
            "next_billing_date": _next_billing_date(new_end, auto_renewal),
            "expiry_notification_sent": False,
            "cancellation_reason": None,
            "cancelled_at": None,
            "cancelled_by": None,
        },
        Subscription.end_date == previous_end,
    )
    if not changed:
        db.rollback()
        raise Conflict(f"Subscription {subscription_id} changed concurrently, retry")
    db.commit()

    logger.info(f"Subscription renewed: id={subscription_id}, period={period}, end_date={previous_end} -> {new_end}")
    return sub


def complete(db: Session, subscription_id: int) -> Subscription:
    """Course finished: ACTIVE -> COMPLETED, slot released"""
    sub = get_subscription(db, subscription_id)
    if sub.status != "active":
        raise InvalidTransition(
            f"Only active subscriptions can be completed (current: {sub.status})",
            current=sub.status, requested="completed",
        )
    if not ledger_service.transition_subscription(db, sub, ("active",), {"status": "completed", "next_billing_date": None}):
        db.rollback()
        raise Conflict(f"Subscription {subscription_id} changed concurrently, retry")
    db.commit()
    logger.info(f"Subscription completed: id={subscription_id}")
    return sub


# =========================================================
# batch transitions
# =========================================================

def sweep_expire(db: Session, now: datetime = None, failures: list = None) -> int:
    """ACTIVE subscriptions past end_date -> EXPIRED, one conditional update per row.

    Returns the number of transitions this call made. Rows another sweeper got
    to first are skipped. Delivery failures are appended to ``failures``.
    """
    now = to_naive_utc(now) if now else utcnow()
    if failures is None:
        failures = []

    candidates = db.query(Subscription.id).filter(
        Subscription.status == "active",
        Subscription.end_date < now,
    ).order_by(Subscription.end_date).all()

    expired = 0
    for (subscription_id,) in candidates:
        try:
            sub = db.query(Subscription).filter(Subscription.id == subscription_id).first()
            if not sub:
                continue
            changed = ledger_service.transition_subscription(
                db, sub, ("active",), {"status": "expired", "next_billing_date": None},
                Subscription.end_date < now,
            )
            if not changed:
                db.rollback()
                continue
            notification_outbox.queue(
                db, "expired", sub.user_id, subscription_id=sub.id,
                course_title=ledger_service.get_course_title(db, sub.course_id),
                end_date=notification_outbox.format_date(sub.end_date),
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Expire failed: subscription_id={subscription_id} - {e}")
            failures.append({"phase": "expire", "subscription_id": subscription_id, "error": str(e)})
            continue

        expired += 1
        logger.info(f"Subscription expired: id={subscription_id}")
        failures.extend(notification_outbox.flush(db))

    return expired


def cancel_stale_pending(db: Session, now: datetime = None) -> int:
    """Cancel PENDING subscriptions whose checkout was abandoned, releasing their slots"""
    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.STALE_PENDING_SUBSCRIPTION_HOURS)

    has_live_payment = exists().where(
        Payment.subscription_id == Subscription.id,
        (Payment.status == "success") | (Payment.status.in_(OPEN_STATUSES) & (Payment.created_at >= cutoff)),
    )
    stale_ids = [
        row[0] for row in db.query(Subscription.id).filter(
            Subscription.status == "pending",
            Subscription.created_at < cutoff,
            ~has_live_payment,
        ).all()
    ]

    cancelled = 0
    for subscription_id in stale_ids:
        try:
            cancel(db, subscription_id, reason="Checkout was not completed", immediate=True)
            cancelled += 1
        except (Conflict, InvalidTransition, NotFound) as e:
            logger.info(f"Stale pending skipped: subscription_id={subscription_id} - {e}")
    if cancelled:
        logger.info(f"Stale pending subscriptions cancelled: {cancelled}")
    return cancelled


def purge_subscription(db: Session, subscription_id: int):
    """Administrative delete; payments are kept with subscription_id cleared"""
    sub = get_subscription(db, subscription_id)
    ledger_service.delete_subscription(db, sub)
    db.commit()
    logger.warning(f"Subscription purged: id={subscription_id}")
