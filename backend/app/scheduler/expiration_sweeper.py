"""Expiration sweep: expire lapsed subscriptions and remind the ones ending soon"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import to_naive_utc, utcnow
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import DeliveryError
from app.core.redis import write_heartbeat
from app.models.subscription import Subscription
from app.services import ledger_service, notification_outbox, subscription_service
from app.core.logging import get_logger

logger = get_logger(__name__)

JOB_ID = "expiration_sweeper"


@dataclass
class SweepReport:
    expired: int = 0
    reminded: int = 0
    failures: list = field(default_factory=list)


def send_expiring_reminders(db: Session, now: datetime, failures: list) -> int:
    """One "expiring" email per ACTIVE subscription ending within EXPIRING_SOON_DAYS"""
    horizon = now + timedelta(days=settings.EXPIRING_SOON_DAYS)
    subs = db.query(Subscription).filter(
        Subscription.status == "active",
        Subscription.end_date >= now,
        Subscription.end_date <= horizon,
        Subscription.expiry_notification_sent == False,  # noqa: E712
    ).order_by(Subscription.end_date).all()

    reminded = 0
    for sub in subs:
        subscription_id, user_id, end_date = sub.id, sub.user_id, sub.end_date
        if not ledger_service.claim_expiry_notice(db, subscription_id):
            db.rollback()
            continue
        db.commit()

        days_left = max((end_date - now).days, 0)
        notification = notification_outbox.PendingNotification(
            kind="expiring",
            user_id=user_id,
            subscription_id=subscription_id,
            template_data={
                "course_title": ledger_service.get_course_title(db, sub.course_id),
                "end_date": notification_outbox.format_date(end_date),
                "days_left": days_left,
            },
        )
        try:
            notification_outbox.deliver(db, notification)
        except DeliveryError as e:
            ledger_service.release_expiry_notice(db, subscription_id)
            db.commit()
            logger.error(f"Expiring reminder failed: subscription_id={subscription_id} - {e}")
            failures.append({"phase": "expiring", "subscription_id": subscription_id, "error": str(e)})
            continue
        reminded += 1

    return reminded


def run(now: datetime = None, db: Session = None) -> SweepReport:
    """One sweep. Failures are collected in the report; they never stop the run"""
    now = to_naive_utc(now) if now else utcnow()
    own_session = db is None
    if own_session:
        db = SessionLocal()

    report = SweepReport()
    try:
        try:
            report.expired = subscription_service.sweep_expire(db, now, failures=report.failures)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Expire phase failed: {e}")
            report.failures.append({"phase": "expire", "error": str(e)})

        try:
            report.reminded = send_expiring_reminders(db, now, report.failures)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Reminder phase failed: {e}")
            report.failures.append({"phase": "expiring", "error": str(e)})
    finally:
        if own_session:
            db.close()

    write_heartbeat(JOB_ID)
    if report.failures:
        logger.warning(f"Sweep finished with {len(report.failures)} failure(s): expired={report.expired}, reminded={report.reminded}")
    else:
        logger.info(f"Sweep finished: expired={report.expired}, reminded={report.reminded}")
    return report
