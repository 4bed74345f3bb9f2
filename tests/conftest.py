import hashlib
import hmac
import itertools
import json
import os
import tempfile
from types import SimpleNamespace
from unittest.mock import patch

import pytest

# Set test environment variables before the app reads its settings
_db_fd, _db_path = tempfile.mkstemp(suffix=".db")
os.environ["DATABASE_URL"] = f"sqlite:///{_db_path}"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["MONOBANK_TOKEN"] = "test-token"
os.environ["MONOBANK_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["SCHEDULER_TOKEN"] = "test-scheduler-token"
os.environ["RESEND_API_KEY"] = "re_test"
os.environ["ENV"] = "test"
os.environ["DEBUG"] = "false"

from app.core.database import Base, engine, SessionLocal  # noqa: E402
from app.models import User, Course, Subscription, Payment  # noqa: E402
from app.services.monobank_service import InvoiceResult  # noqa: E402

WEBHOOK_SECRET = "test-webhook-secret"


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the services use"""

    def __init__(self):
        self.strings = {}
        self.hashes = {}
        self.zsets = {}

    def set(self, key, value, ex=None):
        self.strings[key] = value
        return True

    def get(self, key):
        return self.strings.get(key)

    def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    def hincrby(self, key, field, amount=1):
        bucket = self.hashes.setdefault(key, {})
        bucket[field] = str(int(bucket.get(field, 0)) + amount)
        return int(bucket[field])

    def hdel(self, key, *fields):
        bucket = self.hashes.get(key, {})
        return sum(1 for f in fields if bucket.pop(f, None) is not None)

    def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zrangebyscore(self, key, min_score, max_score, start=None, num=None):
        members = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        due = [m for m, score in members if score <= float(max_score)]
        if start is not None and num is not None:
            due = due[start:start + num]
        return due

    def zrem(self, key, *members):
        zset = self.zsets.get(key, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    def zscore(self, key, member):
        return self.zsets.get(key, {}).get(member)


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def fake_redis():
    r = FakeRedis()
    with patch("app.core.redis.get_sync_redis", return_value=r), \
            patch("app.services.sync_retry_queue.get_sync_redis", return_value=r):
        yield r


@pytest.fixture(autouse=True)
def sent_emails():
    """Lifecycle emails captured instead of going to Resend"""
    sent = []

    def fake_notify(kind, recipient_email, template_data):
        sent.append({"kind": kind, "to": recipient_email, "data": template_data})
        return {"id": f"email_{len(sent)}"}

    with patch("app.services.mail_service.notify", side_effect=fake_notify):
        yield sent


@pytest.fixture
def gateway():
    """Monobank client functions replaced by mocks; invoices get ids inv_1, inv_2, ..."""
    counter = itertools.count(1)

    def fake_create_invoice(**kwargs):
        n = next(counter)
        return InvoiceResult(invoice_id=f"inv_{n}", checkout_url=f"https://pay.mbnk.biz/inv_{n}")

    with patch("app.services.monobank_service.create_invoice", side_effect=fake_create_invoice) as create_invoice, \
            patch("app.services.monobank_service.get_invoice_status") as get_invoice_status, \
            patch("app.services.monobank_service.cancel_invoice", return_value=True) as cancel_invoice, \
            patch("app.services.monobank_service.refund_invoice", return_value={}) as refund_invoice:
        yield SimpleNamespace(
            create_invoice=create_invoice,
            get_invoice_status=get_invoice_status,
            cancel_invoice=cancel_invoice,
            refund_invoice=refund_invoice,
        )


def make_user(db, email="student@example.com", role="student", **kwargs) -> User:
    user = User(email=email, name=kwargs.pop("name", "Olena"), role=role, **kwargs)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_course(db, max_students=None, **kwargs) -> Course:
    course = Course(title=kwargs.pop("title", "Python for Data Analysis"), max_students=max_students, **kwargs)
    db.add(course)
    db.commit()
    db.refresh(course)
    return course


def signed(payload: dict) -> tuple[bytes, str]:
    body = json.dumps(payload).encode()
    return body, hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()


def students_count(db, course_id: int) -> int:
    db.expire_all()
    return db.query(Course).filter(Course.id == course_id).first().current_students_count


def holding_count(db, course_id: int) -> int:
    return db.query(Subscription).filter(
        Subscription.course_id == course_id,
        Subscription.status.in_(("pending", "active")),
    ).count()


def reload(db, model, row_id):
    db.expire_all()
    return db.query(model).filter(model.id == row_id).first()


@pytest.fixture
def user(db):
    return make_user(db)


@pytest.fixture
def admin(db):
    return make_user(db, email="admin@example.com", role="admin", name="Admin")


_references = itertools.count(1)


def add_payment(db, sub, status="success", amount=None, **kwargs) -> Payment:
    n = next(_references)
    payment = Payment(
        reference=kwargs.pop("reference", f"ref_{n}"),
        gateway_invoice_id=kwargs.pop("gateway_invoice_id", f"inv_test_{n}"),
        subscription_id=sub.id,
        user_id=sub.user_id,
        amount=sub.price if amount is None else amount,
        currency=sub.currency,
        status=status,
        attempt_number=kwargs.pop("attempt_number", 1),
        attempt_history=[],
        **kwargs,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment
