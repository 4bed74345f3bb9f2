"""Subscription router: enroll, cancel, renew, checkout"""
import urllib.parse
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.config import settings
from app.models.user import User
from app.schemas.payment import CheckoutResponse
from app.schemas.subscription import (
    EnrollRequest, CancelRequest, RenewRequest, CheckoutRequest, SubscriptionInfo, to_minor_units,
)
from app.services import payment_service, subscription_service
from app.routers.deps import require_login, ensure_owner
from app.core.logging import get_logger

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])
logger = get_logger(__name__)


def _validate_redirect_url(url: str) -> str:
    """Redirects are only allowed back to our own site"""
    if not url:
        return url
    parsed = urllib.parse.urlparse(url)
    site_parsed = urllib.parse.urlparse(settings.SITE_URL)
    if parsed.netloc and parsed.netloc != site_parsed.netloc:
        raise HTTPException(status_code=400, detail="Invalid redirect URL")
    return url


def _owned_subscription(db: Session, subscription_id: int, user: User):
    sub = subscription_service.get_subscription(db, subscription_id)
    ensure_owner(sub.user_id, user)
    return sub


@router.post("", response_model=SubscriptionInfo, status_code=201)
def enroll(
    req: EnrollRequest,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    """Create a PENDING subscription (reserves a course seat)"""
    return subscription_service.enroll(
        db,
        user_id=user.id,
        course_id=req.course_id,
        period=req.period,
        price=to_minor_units(req.price),
        currency=req.currency,
    )


@router.get("/me", response_model=list[SubscriptionInfo])
def my_subscriptions(
    status: str = None,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    return subscription_service.list_user_subscriptions(db, user.id, status=status)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionInfo)
def cancel_subscription(
    subscription_id: int,
    req: CancelRequest,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    _owned_subscription(db, subscription_id, user)
    return subscription_service.cancel(
        db, subscription_id,
        reason=req.reason,
        immediate=req.immediate,
        cancelled_by=user.id,
    )


@router.post("/{subscription_id}/renew", response_model=SubscriptionInfo)
def renew_subscription(
    subscription_id: int,
    req: RenewRequest,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    _owned_subscription(db, subscription_id, user)
    return subscription_service.renew(db, subscription_id, req.period, auto_renewal=req.auto_renewal)


@router.post("/{subscription_id}/pay", response_model=CheckoutResponse)
def start_checkout(
    subscription_id: int,
    req: CheckoutRequest,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    """Open a Monobank invoice; the client redirects to checkout_url"""
    _owned_subscription(db, subscription_id, user)
    payment, checkout_url = payment_service.start_checkout(
        db,
        subscription_id,
        amount=to_minor_units(req.amount) if req.amount is not None else None,
        description=req.description,
        redirect_url=_validate_redirect_url(req.redirect_url),
    )
    return CheckoutResponse(
        payment_id=payment.id,
        invoice_id=payment.gateway_invoice_id,
        checkout_url=checkout_url,
        status=payment.status,
    )
