from sqlalchemy import Column, Integer, String, Boolean, DateTime, CheckConstraint, func
from app.core.clock import utcnow
from app.core.database import Base


class Course(Base):
    """Projection of the course catalog: availability flags and the capacity counter"""

    __tablename__ = "courses"
    __table_args__ = (
        CheckConstraint("current_students_count >= 0", name="ck_courses_students_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_published = Column(Boolean, nullable=False, default=True)
    max_students = Column(Integer, nullable=True, comment="NULL or 0 = unlimited")
    current_students_count = Column(
        Integer, nullable=False, default=0, server_default="0",
        comment="PENDING + ACTIVE subscriptions holding a slot",
    )
    start_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)
