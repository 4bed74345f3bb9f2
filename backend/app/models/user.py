from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum as SAEnum, func
from app.core.clock import utcnow
from app.core.database import Base


class User(Base):
    """Projection of the external user directory (recipients and ownership checks)"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    second_name = Column(String(100), nullable=True)
    role = Column(SAEnum("student", "teacher", "admin", name="user_role"), nullable=False, default="student")
    is_active = Column(Boolean, nullable=False, default=True)
    email_notifications = Column(Boolean, nullable=False, default=True, comment="subscription emails opt-in")
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.name} {self.second_name}" if self.second_name else self.name
