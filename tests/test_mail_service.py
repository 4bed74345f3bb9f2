from unittest.mock import patch

import pytest

from app.core.config import settings
from app.core.exceptions import DeliveryError
from app.services import mail_service

# the autouse sent_emails fixture replaces mail_service.notify; keep the real one
real_notify = mail_service.notify


def test_render_activated():
    subject, html = mail_service.render("activated", {
        "name": "Olena",
        "course_title": "Python for Data Analysis",
        "end_date": "2027-10-19",
    })

    assert subject == f"[{settings.SITE_NAME}] Your subscription is active"
    assert "Hello, Olena!" in html
    assert "Python for Data Analysis" in html
    assert "2027-10-19" in html


def test_render_cancelled_variants():
    _, immediate = mail_service.render("cancelled", {"name": "Olena", "immediate": True, "reason": "Payment refunded"})
    _, deferred = mail_service.render("cancelled", {"name": "Olena", "immediate": False, "end_date": "2027-01-31"})

    assert "access has ended" in immediate
    assert "Reason: Payment refunded" in immediate
    assert "will not be renewed" in deferred
    assert "2027-01-31" in deferred


def test_render_escapes_user_content():
    _, html = mail_service.render("expired", {"name": "<script>x</script>", "end_date": "2027-01-31"})
    assert "<script>" not in html


def test_render_unknown_kind():
    with pytest.raises(ValueError):
        mail_service.render("welcome", {})


def test_notify_sends_through_resend():
    with patch("app.services.mail_service.resend.Emails.send", return_value={"id": "em_1"}) as send:
        result = real_notify("expiring", "olena@example.com", {"name": "Olena", "end_date": "2027-01-31", "days_left": 3})

    assert result == {"id": "em_1"}
    params = send.call_args.args[0]
    assert params["to"] == ["olena@example.com"]
    assert params["from"] == settings.RESEND_FROM_EMAIL
    assert "3 day(s) left" in params["html"]


def test_notify_wraps_provider_errors():
    with patch("app.services.mail_service.resend.Emails.send", side_effect=RuntimeError("rate limited")):
        with pytest.raises(DeliveryError):
            real_notify("expired", "olena@example.com", {"name": "Olena", "end_date": "2027-01-31"})
