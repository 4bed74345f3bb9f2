from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, func
from app.core.clock import utcnow
from app.core.database import Base


class SystemLog(Base):
    """Audit trail: rejected payment transitions, bad webhook signatures, repair actions"""

    __tablename__ = "system_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    level = Column(String(20), nullable=False, index=True, comment="INFO/WARNING/ERROR/CRITICAL")
    event_type = Column(String(100), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True, index=True)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now(), index=True)
