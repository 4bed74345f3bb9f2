from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, Enum as SAEnum, ForeignKey, Index, func
from app.core.clock import utcnow
from app.core.database import Base

SUBSCRIPTION_STATUSES = ("pending", "active", "cancelled", "expired", "completed")
# statuses that hold a course capacity slot and count toward the (user, course) uniqueness
HOLDING_STATUSES = ("pending", "active")
TERMINAL_STATUSES = ("cancelled", "expired", "completed")

SUBSCRIPTION_KINDS = ("course", "period")

PERIOD_MONTHS = {
    "1_month": 1,
    "3_months": 3,
    "6_months": 6,
    "12_months": 12,
}

CURRENCIES = ("UAH", "USD", "EUR")


def build_active_key(user_id: int, course_id) -> str | None:
    """Value of the unique `active_key` column while the row holds a course slot"""
    if course_id is None:
        return None
    return f"{user_id}:{course_id}"


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_status_end_date", "status", "end_date"),
        Index("ix_subscriptions_user_status", "user_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id", ondelete="SET NULL"), nullable=True, index=True)
    kind = Column(SAEnum(*SUBSCRIPTION_KINDS, name="subscription_kind"), nullable=False, default="course")
    status = Column(
        SAEnum(*SUBSCRIPTION_STATUSES, name="subscription_status"),
        nullable=False,
        default="pending",
    )
    period = Column(SAEnum(*PERIOD_MONTHS.keys(), name="subscription_period"), nullable=False, default="1_month")
    active_key = Column(String(64), nullable=True, unique=True, comment="user_id:course_id while pending/active")

    # amounts in minor units (kopecks / cents)
    price = Column(Integer, nullable=False)
    currency = Column(SAEnum(*CURRENCIES, name="subscription_currency"), nullable=False, default="UAH")
    paid_amount = Column(Integer, nullable=False, default=0)

    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)

    auto_renewal = Column(Boolean, nullable=False, default=False)
    next_billing_date = Column(DateTime, nullable=True)

    activated_by_payment_id = Column(Integer, nullable=True, index=True, comment="payment whose success activated this row")
    payment_date = Column(DateTime, nullable=True)

    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    expiry_notification_sent = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)

    @property
    def holds_slot(self) -> bool:
        return self.course_id is not None and self.status in HOLDING_STATUSES

    @property
    def cancellation_scheduled(self) -> bool:
        return self.status == "active" and self.cancelled_at is not None
