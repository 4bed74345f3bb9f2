from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Enum as SAEnum, ForeignKey, Index, func
from app.core.clock import utcnow
from app.core.database import Base
from app.models.subscription import CURRENCIES

PAYMENT_STATUSES = ("created", "pending", "processing", "success", "failed", "cancelled", "refunded")
OPEN_STATUSES = ("created", "pending", "processing")
FINAL_STATUSES = ("success", "failed", "cancelled", "refunded")
# abandoned checkouts: never reached the gateway's processing stage
PURGEABLE_STATUSES = ("created", "pending")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_status_created_at", "status", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(64), nullable=False, unique=True, comment="merchantPaymInfo.reference sent to the gateway")
    gateway_invoice_id = Column(String(128), nullable=True, unique=True, comment="idempotency key for webhooks")
    checkout_url = Column(String(1024), nullable=True)

    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    amount = Column(Integer, nullable=False, comment="minor units")
    currency = Column(SAEnum(*CURRENCIES, name="payment_currency"), nullable=False, default="UAH")
    description = Column(String(255), nullable=True)

    status = Column(SAEnum(*PAYMENT_STATUSES, name="payment_status"), nullable=False, default="created")
    attempt_number = Column(Integer, nullable=False, default=1)
    attempt_history = Column(JSON, nullable=False, default=list)
    failure_reason = Column(Text, nullable=True)

    paid_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    # settlement identifiers, stored verbatim
    gateway_reference = Column(String(255), nullable=True)
    approval_code = Column(String(64), nullable=True)
    rrn = Column(String(64), nullable=True)
    gateway_response = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)
