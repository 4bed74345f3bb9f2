from datetime import timedelta

import pytest

from app.core.clock import utcnow
from app.core.exceptions import (
    AlreadyFinalized,
    AlreadyPaid,
    CapacityExceeded,
    GatewayRejected,
    GatewayUnavailable,
    InvalidSignature,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from app.models import Payment, Subscription, SystemLog
from app.schemas.payment import MonobankInvoiceEvent
from app.services import payment_service, subscription_service, sync_retry_queue
from conftest import add_payment, make_course, make_user, reload, signed, students_count


def _webhook(db, invoice_id, status, **extra):
    body, sig = signed({"invoiceId": invoice_id, "status": status, "ccy": 980, **extra})
    return payment_service.ingest_webhook(db, body, sig)


def _audit_count(db, event_type):
    return db.query(SystemLog).filter(SystemLog.event_type == event_type).count()


@pytest.fixture
def course(db):
    return make_course(db, max_students=1)


@pytest.fixture
def pending_sub(db, user, course):
    return subscription_service.enroll(db, user.id, price=10000, course_id=course.id)


@pytest.fixture
def checkout(db, pending_sub, gateway):
    payment, _ = payment_service.start_checkout(db, pending_sub.id)
    return payment


# =========================================================
# checkout
# =========================================================

def test_checkout_creates_invoice(db, pending_sub, gateway):
    payment, url = payment_service.start_checkout(db, pending_sub.id, redirect_url="https://example.com/done")

    assert url == "https://pay.mbnk.biz/inv_1"
    assert payment.status == "created"
    assert payment.gateway_invoice_id == "inv_1"
    assert payment.amount == 10000
    assert payment.attempt_number == 1
    assert payment.attempt_history[0]["status"] == "created"
    gateway.create_invoice.assert_called_once()
    kwargs = gateway.create_invoice.call_args.kwargs
    assert kwargs["amount"] == 10000
    assert kwargs["currency"] == "UAH"
    assert kwargs["reference"] == payment.reference
    assert kwargs["redirect_url"] == "https://example.com/done"
    assert kwargs["description"] == "Course subscription: Python for Data Analysis"


def test_checkout_reuses_open_invoice(db, pending_sub, gateway):
    first, _ = payment_service.start_checkout(db, pending_sub.id)
    second, url = payment_service.start_checkout(db, pending_sub.id)

    assert second.id == first.id
    assert url == first.checkout_url
    assert gateway.create_invoice.call_count == 1


def test_checkout_after_failed_attempt_opens_new_invoice(db, pending_sub, gateway):
    first, _ = payment_service.start_checkout(db, pending_sub.id)
    _webhook(db, "inv_1", "failure", amount=10000, errText="Card declined")

    second, url = payment_service.start_checkout(db, pending_sub.id)

    assert second.id != first.id
    assert second.attempt_number == 2
    assert url == "https://pay.mbnk.biz/inv_2"


def test_checkout_gateway_error_persists_nothing(db, pending_sub, gateway):
    gateway.create_invoice.side_effect = GatewayUnavailable("timeout")

    with pytest.raises(GatewayUnavailable):
        payment_service.start_checkout(db, pending_sub.id)
    assert db.query(Payment).count() == 0


def test_checkout_rejects_paid_or_closed_subscription(db, pending_sub, checkout, gateway):
    _webhook(db, checkout.gateway_invoice_id, "success", amount=10000)
    with pytest.raises(AlreadyPaid):
        payment_service.start_checkout(db, pending_sub.id)

    other = subscription_service.enroll(db, make_user(db, email="b@example.com").id, price=500, period="1_month")
    subscription_service.cancel(db, other.id)
    with pytest.raises(InvalidTransition):
        payment_service.start_checkout(db, other.id)


def test_checkout_validates_amount_and_currency(db, pending_sub, gateway):
    with pytest.raises(ValidationError):
        payment_service.start_checkout(db, pending_sub.id, amount=0)
    with pytest.raises(ValidationError):
        payment_service.start_checkout(db, pending_sub.id, currency="USD")
    gateway.create_invoice.assert_not_called()


# =========================================================
# webhook
# =========================================================

def test_successful_payment_activates_once(db, user, course, pending_sub, checkout, sent_emails):
    first = _webhook(db, "inv_1", "success", amount=10000, approvalCode="662476", rrn="060189181768")
    redelivered = _webhook(db, "inv_1", "success", amount=10000, approvalCode="662476", rrn="060189181768")

    assert first.status == "success"
    assert redelivered.status == "success"
    assert first.approval_code == "662476"
    assert first.paid_at is not None
    assert [h["status"] for h in reload(db, Payment, checkout.id).attempt_history] == ["created", "success"]

    sub = reload(db, Subscription, pending_sub.id)
    assert sub.status == "active"
    assert sub.activated_by_payment_id == checkout.id
    assert [e["kind"] for e in sent_emails] == ["activated"]
    assert students_count(db, course.id) == 1

    late = make_user(db, email="late@example.com")
    with pytest.raises(CapacityExceeded):
        subscription_service.enroll(db, late.id, price=10000, course_id=course.id)


def test_invalid_signature_is_audited(db, checkout):
    body, _ = signed({"invoiceId": "inv_1", "status": "success", "amount": 10000})

    with pytest.raises(InvalidSignature):
        payment_service.ingest_webhook(db, body, "0" * 64)
    with pytest.raises(InvalidSignature):
        payment_service.ingest_webhook(db, body, None)

    assert _audit_count(db, "webhook_invalid_signature") == 2
    assert reload(db, Payment, checkout.id).status == "created"


def test_unknown_invoice_and_unparseable_body_are_ignored(db, checkout):
    assert _webhook(db, "inv_missing", "success", amount=10000) is None

    body, sig = signed({"status": "success"})
    assert payment_service.ingest_webhook(db, body, sig) is None


def test_unmapped_status_leaves_payment_alone(db, checkout):
    payment = _webhook(db, "inv_1", "chargeback", amount=10000)
    assert payment.status == "created"


def test_failed_payment_records_reason(db, pending_sub, checkout):
    payment = _webhook(db, "inv_1", "failure", amount=10000, errCode="59", errText="Insufficient funds")

    assert payment.status == "failed"
    assert payment.failure_reason == "59: Insufficient funds"
    assert reload(db, Subscription, pending_sub.id).status == "pending"


def test_processing_then_success(db, pending_sub, checkout):
    assert _webhook(db, "inv_1", "processing", amount=10000).status == "processing"
    assert _webhook(db, "inv_1", "success", amount=10000).status == "success"
    assert reload(db, Subscription, pending_sub.id).status == "active"


def test_out_of_order_event_after_success_is_rejected(db, checkout):
    _webhook(db, "inv_1", "success", amount=10000)

    payment = _webhook(db, "inv_1", "processing", amount=10000)

    assert payment.status == "success"
    assert _audit_count(db, "payment_transition_rejected") == 1


def test_success_after_cancel_is_an_anomaly(db, pending_sub, checkout, gateway):
    payment_service.cancel_payment(db, checkout.id)

    payment = _webhook(db, "inv_1", "success", amount=10000)

    assert payment.status == "cancelled"
    assert _audit_count(db, "payment_transition_rejected") == 1
    assert reload(db, Subscription, pending_sub.id).status == "pending"


def test_cancelling_subscription_voids_unpaid_invoice(db, pending_sub, checkout, gateway, sent_emails):
    subscription_service.cancel(db, pending_sub.id, reason="changed my mind")

    gateway.cancel_invoice.assert_called_once_with("inv_1")
    voided = reload(db, Payment, checkout.id)
    assert voided.status == "cancelled"
    assert voided.cancelled_at is not None
    assert voided.attempt_history[-1]["source"] == "subscription_cancel"
    assert voided.attempt_history[-1]["reason"] == "changed my mind"

    # the customer can no longer pay it; a stray callback is rejected
    assert _webhook(db, "inv_1", "success", amount=10000).status == "cancelled"
    assert _audit_count(db, "payment_transition_rejected") == 1
    assert [e["kind"] for e in sent_emails] == ["cancelled"]


def test_processing_payment_is_not_voided_on_cancel(db, pending_sub, checkout, gateway):
    _webhook(db, "inv_1", "processing", amount=10000)

    subscription_service.cancel(db, pending_sub.id)

    gateway.cancel_invoice.assert_not_called()
    assert reload(db, Payment, checkout.id).status == "processing"


def test_success_for_cancelled_subscription_needs_refund(db, pending_sub, checkout, gateway, sent_emails):
    gateway.cancel_invoice.side_effect = GatewayRejected("Invoice is being paid", provider_status=400)
    subscription_service.cancel(db, pending_sub.id, reason="changed my mind")

    payment = _webhook(db, "inv_1", "success", amount=10000)

    assert payment.status == "success"
    assert reload(db, Subscription, pending_sub.id).status == "cancelled"
    assert _audit_count(db, "payment_not_activated") == 1
    assert [e["kind"] for e in sent_emails] == ["cancelled"]


def test_amount_mismatch_confirms_with_gateway(db, pending_sub, checkout, gateway):
    gateway.get_invoice_status.return_value = MonobankInvoiceEvent(invoice_id="inv_1", status="success", amount=10000)

    payment = _webhook(db, "inv_1", "success", amount=1)

    gateway.get_invoice_status.assert_called_once_with("inv_1")
    assert payment.status == "success"
    assert reload(db, Subscription, pending_sub.id).status == "active"


def test_amount_mismatch_with_gateway_down_schedules_retry(db, pending_sub, checkout, gateway, fake_redis):
    gateway.get_invoice_status.side_effect = GatewayUnavailable("timeout")

    payment = _webhook(db, "inv_1", "success", amount=1)

    assert payment.status == "created"
    assert fake_redis.zscore(sync_retry_queue.QUEUE_KEY, "inv_1") is not None
    assert reload(db, Subscription, pending_sub.id).status == "pending"


def test_gateway_reporting_other_amount_is_not_applied(db, pending_sub, checkout, gateway):
    gateway.get_invoice_status.return_value = MonobankInvoiceEvent(invoice_id="inv_1", status="success", amount=1)

    payment = payment_service.sync_status(db, "inv_1")

    assert payment.status == "created"
    assert _audit_count(db, "payment_amount_mismatch") == 1
    assert reload(db, Subscription, pending_sub.id).status == "pending"


def test_sync_unknown_invoice(db, gateway):
    with pytest.raises(NotFound):
        payment_service.sync_status(db, "inv_nope")


# =========================================================
# cancel / refund
# =========================================================

def test_cancel_open_payment(db, checkout, gateway):
    payment = payment_service.cancel_payment(db, checkout.id)

    assert payment.status == "cancelled"
    assert payment.cancelled_at is not None
    gateway.cancel_invoice.assert_called_once_with("inv_1")

    again = payment_service.cancel_payment(db, checkout.id)
    assert again.status == "cancelled"
    assert gateway.cancel_invoice.call_count == 1


def test_cancel_successful_payment_rejected(db, checkout, gateway):
    _webhook(db, "inv_1", "success", amount=10000)
    with pytest.raises(AlreadyFinalized):
        payment_service.cancel_payment(db, checkout.id)


def test_full_refund_cancels_subscription(db, admin, course, pending_sub, checkout, gateway):
    _webhook(db, "inv_1", "success", amount=10000)

    payment = payment_service.refund_payment(db, checkout.id, comment="duplicate charge", refunded_by=admin.id)

    assert payment.status == "refunded"
    gateway.refund_invoice.assert_called_once_with("inv_1", amount=None, comment="duplicate charge")
    sub = reload(db, Subscription, pending_sub.id)
    assert sub.status == "cancelled"
    assert sub.cancelled_by == admin.id
    assert students_count(db, course.id) == 0

    with pytest.raises(AlreadyFinalized):
        payment_service.refund_payment(db, checkout.id)


def test_partial_refund_keeps_access(db, pending_sub, checkout, gateway):
    _webhook(db, "inv_1", "success", amount=10000)

    payment = payment_service.refund_payment(db, checkout.id, amount=4000)

    assert payment.status == "success"
    gateway.refund_invoice.assert_called_once_with("inv_1", amount=4000, comment=None)
    assert _audit_count(db, "payment_partially_refunded") == 1
    assert reload(db, Subscription, pending_sub.id).status == "active"


def test_refund_validation(db, checkout, gateway):
    with pytest.raises(InvalidTransition):
        payment_service.refund_payment(db, checkout.id)

    _webhook(db, "inv_1", "success", amount=10000)
    with pytest.raises(ValidationError):
        payment_service.refund_payment(db, checkout.id, amount=20000)
    gateway.refund_invoice.assert_not_called()


# =========================================================
# repair passes
# =========================================================

def test_repair_pending_activations(db, pending_sub, sent_emails):
    add_payment(db, pending_sub, status="success")

    assert payment_service.repair_pending_activations(db) == 1
    assert payment_service.repair_pending_activations(db) == 0

    assert reload(db, Subscription, pending_sub.id).status == "active"
    assert [e["kind"] for e in sent_emails] == ["activated"]


def test_reconcile_polls_quiet_open_payments(db, pending_sub, checkout, gateway):
    fresh_sub = subscription_service.enroll(db, make_user(db, email="b@example.com").id, price=700, period="1_month")
    fresh, _ = payment_service.start_checkout(db, fresh_sub.id)
    db.query(Payment).filter(Payment.id == checkout.id).update(
        {"updated_at": utcnow() - timedelta(hours=1)}, synchronize_session=False,
    )
    db.commit()
    gateway.get_invoice_status.return_value = MonobankInvoiceEvent(invoice_id="inv_1", status="success", amount=10000)

    assert payment_service.reconcile_open_payments(db) == 1

    gateway.get_invoice_status.assert_called_once_with("inv_1")
    assert reload(db, Payment, checkout.id).status == "success"
    assert reload(db, Payment, fresh.id).status == "created"
    assert reload(db, Subscription, pending_sub.id).status == "active"


def test_reconcile_survives_gateway_outage(db, checkout, gateway):
    db.query(Payment).filter(Payment.id == checkout.id).update(
        {"updated_at": utcnow() - timedelta(hours=1)}, synchronize_session=False,
    )
    db.commit()
    gateway.get_invoice_status.side_effect = GatewayUnavailable("timeout")

    assert payment_service.reconcile_open_payments(db) == 0
    assert reload(db, Payment, checkout.id).status == "created"


def test_purge_abandoned_payments(db, pending_sub):
    old = utcnow() - timedelta(days=3)
    abandoned_id = add_payment(db, pending_sub, status="created", created_at=old).id
    in_flight_id = add_payment(db, pending_sub, status="processing", created_at=old).id
    recent_id = add_payment(db, pending_sub, status="created").id

    assert payment_service.purge_abandoned_payments(db) == 1

    assert reload(db, Payment, abandoned_id) is None
    assert reload(db, Payment, in_flight_id) is not None
    assert reload(db, Payment, recent_id) is not None


def test_user_payments_are_paged(db, user, pending_sub):
    for _ in range(3):
        add_payment(db, pending_sub, status="failed")

    items, total = payment_service.get_user_payments(db, user.id, page=2, limit=2)

    assert total == 3
    assert len(items) == 1


# =========================================================
# underpayment
# =========================================================

def test_checkout_below_price_rejected(db, pending_sub, gateway):
    with pytest.raises(ValidationError):
        payment_service.start_checkout(db, pending_sub.id, amount=1)

    gateway.create_invoice.assert_not_called()
    assert db.query(Payment).count() == 0


def test_underpaid_success_does_not_activate(db, pending_sub, sent_emails):
    underpaid = add_payment(db, pending_sub, status="created", amount=1)

    payment = _webhook(db, underpaid.gateway_invoice_id, "success", amount=1)

    assert payment.status == "success"
    sub = reload(db, Subscription, pending_sub.id)
    assert sub.status == "pending"
    assert sub.paid_amount == 0
    assert _audit_count(db, "payment_not_activated") == 1
    assert sent_emails == []
