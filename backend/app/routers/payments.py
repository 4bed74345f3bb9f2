"""Payment router: history, cancellation, admin sync and refunds"""
import math
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models.user import User
from app.schemas.payment import PaymentInfo, PaymentListResponse, RefundRequest
from app.services import payment_service
from app.routers.deps import require_login, require_admin, ensure_owner
from app.core.logging import get_logger

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = get_logger(__name__)


@router.get("/me", response_model=PaymentListResponse)
def my_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    items, total = payment_service.get_user_payments(db, user.id, page=page, limit=limit)
    return PaymentListResponse(
        items=[PaymentInfo.model_validate(p) for p in items],
        total=total,
        page=page,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.post("/{invoice_id}/sync", response_model=PaymentInfo)
def sync_payment(
    invoice_id: str,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Pull the invoice status from Monobank and apply it"""
    logger.info(f"Manual payment sync: invoice={invoice_id}, admin_id={admin.id}")
    return payment_service.sync_status(db, invoice_id)


@router.post("/{payment_id}/cancel", response_model=PaymentInfo)
def cancel_payment(
    payment_id: int,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
):
    payment = payment_service.get_payment(db, payment_id)
    ensure_owner(payment.user_id, user)
    return payment_service.cancel_payment(db, payment_id)


@router.post("/{payment_id}/refund", response_model=PaymentInfo)
def refund_payment(
    payment_id: int,
    req: RefundRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    logger.info(f"Refund requested: payment_id={payment_id}, admin_id={admin.id}")
    return payment_service.refund_payment(
        db, payment_id,
        amount=req.amount,
        comment=req.comment,
        refunded_by=admin.id,
    )
