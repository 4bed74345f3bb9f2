"""Ledger store: conditional writes and lookups over subscriptions, payments and course capacity.

Every state change here is a single compare-and-swap UPDATE guarded by the
row's current state; callers check the boolean result instead of reading and
then writing. Nothing in this module commits: the caller owns the transaction.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import update, or_
from sqlalchemy.orm import Session

from app.models.course import Course
from app.models.payment import Payment
from app.models.subscription import Subscription, HOLDING_STATUSES
from app.models.system_log import SystemLog
from app.core.logging import get_logger

logger = get_logger(__name__)


# =========================================================
# Course capacity
# =========================================================

def claim_course_slot(db: Session, course_id: int) -> bool:
    """Take one capacity slot; False when the course is full or missing"""
    stmt = (
        update(Course)
        .where(
            Course.id == course_id,
            or_(
                Course.max_students.is_(None),
                Course.max_students <= 0,
                Course.current_students_count < Course.max_students,
            ),
        )
        .values(current_students_count=Course.current_students_count + 1)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def release_course_slot(db: Session, course_id: int) -> bool:
    """Give one capacity slot back"""
    stmt = (
        update(Course)
        .where(Course.id == course_id, Course.current_students_count > 0)
        .values(current_students_count=Course.current_students_count - 1)
        .execution_options(synchronize_session=False)
    )
    released = db.execute(stmt).rowcount == 1
    if not released:
        logger.warning(f"Capacity counter already at zero: course_id={course_id}")
    return released


def get_course_title(db: Session, course_id: Optional[int]) -> Optional[str]:
    if course_id is None:
        return None
    row = db.query(Course.title).filter(Course.id == course_id).first()
    return row[0] if row else None


# =========================================================
# Subscriptions
# =========================================================

def transition_subscription(
    db: Session,
    subscription: Subscription,
    from_statuses: tuple,
    values: dict,
    *criteria,
) -> bool:
    """Conditional update of one subscription.

    Applies ``values`` only while the row is still in one of ``from_statuses``
    (and matches any extra ``criteria``). Leaving PENDING/ACTIVE clears the
    uniqueness key and releases the course slot in the same transaction.
    """
    new_status = values.get("status")
    leaving_hold = (
        new_status is not None
        and new_status not in HOLDING_STATUSES
        and any(s in HOLDING_STATUSES for s in from_statuses)
    )
    if leaving_hold:
        values = {**values, "active_key": None}

    course_id = subscription.course_id
    stmt = (
        update(Subscription)
        .where(Subscription.id == subscription.id, Subscription.status.in_(from_statuses), *criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    changed = db.execute(stmt).rowcount == 1
    if changed and leaving_hold and course_id is not None:
        release_course_slot(db, course_id)
    db.expire(subscription)
    return changed


def claim_expiry_notice(db: Session, subscription_id: int) -> bool:
    """Mark the "expiring soon" reminder as sent; False if another run already claimed it"""
    stmt = (
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.status == "active",
            Subscription.expiry_notification_sent == False,  # noqa: E712
        )
        .values(expiry_notification_sent=True)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def release_expiry_notice(db: Session, subscription_id: int):
    """Undo a claimed reminder after a delivery failure so the next sweep retries"""
    db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(expiry_notification_sent=False)
        .execution_options(synchronize_session=False)
    )


def find_holding_subscription(db: Session, user_id: int, course_id: int) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.course_id == course_id,
        Subscription.status.in_(HOLDING_STATUSES),
    ).first()


def delete_subscription(db: Session, subscription: Subscription):
    """Administrative purge: payments stay as audit trail, the held slot is released"""
    db.execute(
        update(Payment)
        .where(Payment.subscription_id == subscription.id)
        .values(subscription_id=None)
        .execution_options(synchronize_session=False)
    )
    if subscription.holds_slot:
        release_course_slot(db, subscription.course_id)
    db.delete(subscription)


# =========================================================
# Payments
# =========================================================

def history_entry(status: str, at: datetime, source: str, reason: str = None) -> dict:
    """One item of Payment.attempt_history"""
    return {"status": status, "at": at.isoformat(), "source": source, "reason": reason}


def transition_payment(db: Session, payment_id: int, expected_status: str, values: dict) -> bool:
    """Conditional update of one payment, guarded by the status it was read with"""
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def find_payment_by_invoice(db: Session, invoice_id: str) -> Optional[Payment]:
    if not invoice_id:
        return None
    return db.query(Payment).filter(Payment.gateway_invoice_id == invoice_id).first()


def has_successful_payment(db: Session, subscription_id: int) -> bool:
    return db.query(Payment.id).filter(
        Payment.subscription_id == subscription_id,
        Payment.status == "success",
    ).first() is not None


def find_open_payment(db: Session, subscription_id: int, since: datetime) -> Optional[Payment]:
    """Most recent checkout still awaiting the gateway, created after ``since``"""
    return db.query(Payment).filter(
        Payment.subscription_id == subscription_id,
        Payment.status.in_(("created", "pending", "processing")),
        Payment.created_at >= since,
    ).order_by(Payment.created_at.desc(), Payment.id.desc()).first()


def count_payments(db: Session, subscription_id: int) -> int:
    return db.query(Payment).filter(Payment.subscription_id == subscription_id).count()


def purge_payments(db: Session, statuses: tuple, older_than: datetime) -> int:
    return db.query(Payment).filter(
        Payment.status.in_(statuses),
        Payment.created_at < older_than,
    ).delete(synchronize_session=False)


# =========================================================
# Audit log
# =========================================================

def record_audit(
    db: Session,
    level: str,
    event_type: str,
    message: str,
    user_id: int = None,
    subscription_id: int = None,
    payment_id: int = None,
    details: dict = None,
):
    """Append an audit entry (committed with the caller's transaction)"""
    db.add(SystemLog(
        level=level,
        event_type=event_type,
        user_id=user_id,
        subscription_id=subscription_id,
        payment_id=payment_id,
        message=message,
        details=details,
    ))
