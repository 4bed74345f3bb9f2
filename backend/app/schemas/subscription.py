from decimal import Decimal, ROUND_HALF_UP
from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import datetime

Period = Literal["1_month", "3_months", "6_months", "12_months"]
Currency = Literal["UAH", "USD", "EUR"]


def to_minor_units(amount: Decimal) -> int:
    """100.50 UAH -> 10050 kopecks"""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class EnrollRequest(BaseModel):
    course_id: Optional[int] = None
    period: Optional[Period] = None
    price: Decimal = Field(gt=0, max_digits=12, decimal_places=2, description="major units")
    currency: Currency = "UAH"


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    immediate: bool = False


class RenewRequest(BaseModel):
    period: Period
    auto_renewal: bool = False


class CheckoutRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2, description="major units; defaults to the subscription price")
    description: Optional[str] = Field(default=None, max_length=255)
    redirect_url: Optional[str] = None


class SubscriptionInfo(BaseModel):
    id: int
    user_id: int
    course_id: Optional[int] = None
    kind: str
    status: str
    period: str
    price: int
    currency: str
    paid_amount: int
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    auto_renewal: bool
    next_billing_date: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_scheduled: bool = False
    created_at: datetime

    model_config = {"from_attributes": True}


class SweepReportResponse(BaseModel):
    expired: int
    reminded: int
    failures: list[dict]
