"""Lifecycle notifications queued on the DB session and delivered after commit.

Services call ``queue`` next to the state change that triggers the email and
``flush`` right after ``db.commit()``. A rollback drops whatever was queued,
so a notification is only ever sent for a transition that was persisted.
"""
from dataclasses import dataclass, field
from sqlalchemy import event
from sqlalchemy.orm import Session
from app.core.exceptions import DeliveryError
from app.core.logging import get_logger
from app.models.user import User
from app.services import mail_service

logger = get_logger(__name__)

OUTBOX_KEY = "notification_outbox"


@dataclass
class PendingNotification:
    kind: str
    user_id: int
    subscription_id: int = None
    template_data: dict = field(default_factory=dict)


def queue(db: Session, kind: str, user_id: int, subscription_id: int = None, **template_data):
    db.info.setdefault(OUTBOX_KEY, []).append(
        PendingNotification(kind=kind, user_id=user_id, subscription_id=subscription_id, template_data=template_data)
    )


def discard(db: Session):
    db.info.pop(OUTBOX_KEY, None)


def pending(db: Session) -> list[PendingNotification]:
    return list(db.info.get(OUTBOX_KEY, []))


@event.listens_for(Session, "after_rollback")
def _discard_on_rollback(session: Session):
    discard(session)


def format_date(value) -> str:
    return value.strftime("%Y-%m-%d") if value else ""


def deliver(db: Session, notification: PendingNotification):
    """Send one notification to its user. Raises DeliveryError"""
    user = db.query(User).filter(User.id == notification.user_id).first()
    if not user or not user.is_active or not user.email_notifications:
        logger.info(f"Notification skipped (recipient opted out or inactive): kind={notification.kind}, user_id={notification.user_id}")
        return
    mail_service.notify(
        notification.kind,
        user.email,
        {"name": user.full_name, **notification.template_data},
    )


def flush(db: Session) -> list[dict]:
    """Deliver everything queued on ``db``; returns the failures (already logged)"""
    notifications = db.info.pop(OUTBOX_KEY, [])
    failures = []
    for notification in notifications:
        try:
            deliver(db, notification)
        except DeliveryError as e:
            logger.error(
                f"Notification failed: kind={notification.kind}, user_id={notification.user_id}, "
                f"subscription_id={notification.subscription_id} - {e}"
            )
            failures.append({
                "kind": notification.kind,
                "user_id": notification.user_id,
                "subscription_id": notification.subscription_id,
                "error": str(e),
            })
    return failures
