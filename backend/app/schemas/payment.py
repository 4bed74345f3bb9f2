from datetime import datetime
from typing import Optional, Union
from pydantic import BaseModel, Field


class MonobankInvoiceEvent(BaseModel):
    """Invoice state as Monobank reports it (webhook body and /invoice/status response)"""

    model_config = {"populate_by_name": True, "extra": "ignore"}

    invoice_id: str = Field(alias="invoiceId", min_length=1)
    status: str
    amount: Optional[int] = None
    ccy: Optional[int] = None
    final_amount: Optional[int] = Field(default=None, alias="finalAmount")
    reference: Optional[str] = None
    approval_code: Optional[str] = Field(default=None, alias="approvalCode")
    rrn: Optional[str] = None
    err_code: Optional[Union[str, int]] = Field(default=None, alias="errCode")
    err_text: Optional[str] = Field(default=None, alias="errText")
    failure_reason: Optional[str] = Field(default=None, alias="failureReason")
    created_date: Optional[str] = Field(default=None, alias="createdDate")
    modified_date: Optional[str] = Field(default=None, alias="modifiedDate")

    @property
    def failure_description(self) -> Optional[str]:
        if self.err_code is not None or self.err_text:
            return f"{self.err_code if self.err_code is not None else ''}: {self.err_text or ''}".strip(" :")
        return self.failure_reason

    def raw(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class PaymentInfo(BaseModel):
    id: int
    reference: str
    gateway_invoice_id: Optional[str] = None
    subscription_id: Optional[int] = None
    amount: int
    currency: str
    status: str
    attempt_number: int
    failure_reason: Optional[str] = None
    checkout_url: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class PaymentListResponse(BaseModel):
    items: list[PaymentInfo]
    total: int
    page: int
    pages: int


class CheckoutResponse(BaseModel):
    payment_id: int
    invoice_id: Optional[str] = None
    checkout_url: str
    status: str


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0, description="minor units; omit for a full refund")
    comment: Optional[str] = Field(default=None, max_length=255)
