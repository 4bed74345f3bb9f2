# import every model so Base.metadata is complete (Alembic autogenerate, create_all in tests)
from app.models.user import User
from app.models.course import Course
from app.models.subscription import Subscription
from app.models.payment import Payment
from app.models.system_log import SystemLog

__all__ = [
    "User",
    "Course",
    "Subscription",
    "Payment",
    "SystemLog",
]
