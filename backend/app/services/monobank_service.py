"""Monobank acquiring API client"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

import requests
from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.core.exceptions import GatewayRejected, GatewayUnavailable
from app.core.logging import get_logger
from app.schemas.payment import MonobankInvoiceEvent

logger = get_logger(__name__)

CURRENCY_CODES = {"UAH": 980, "USD": 840, "EUR": 978}

_session: Optional[requests.Session] = None


@dataclass
class InvoiceResult:
    invoice_id: str
    checkout_url: str


def _get_session() -> requests.Session:
    global _session
    if _session is None:
        _session = requests.Session()
        _session.headers.update({
            "X-Token": settings.MONOBANK_TOKEN,
            "Content-Type": "application/json",
        })
    return _session


def _json_or_empty(response: requests.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _request(method: str, path: str, **kwargs) -> dict:
    """Call the API; transport failures, 429 and 5xx are GatewayUnavailable, other 4xx GatewayRejected"""
    url = f"{settings.MONOBANK_BASE_URL}{path}"
    try:
        response = _get_session().request(method, url, timeout=settings.GATEWAY_TIMEOUT_SECONDS, **kwargs)
    except requests.exceptions.Timeout as e:
        logger.warning(f"Monobank timeout: {method} {path} after {settings.GATEWAY_TIMEOUT_SECONDS}s")
        raise GatewayUnavailable(f"Monobank request timed out: {path}") from e
    except requests.exceptions.RequestException as e:
        logger.warning(f"Monobank request failed: {method} {path} - {e}")
        raise GatewayUnavailable(f"Monobank request failed: {path}") from e

    if response.status_code == 429 or response.status_code >= 500:
        logger.warning(f"Monobank unavailable: {method} {path} status={response.status_code}")
        raise GatewayUnavailable(f"Monobank returned HTTP {response.status_code}")

    body = _json_or_empty(response)
    if response.status_code >= 400:
        description = body.get("errText") or body.get("errorDescription") or f"HTTP {response.status_code}"
        logger.error(f"Monobank rejected: {method} {path} status={response.status_code} - {description}")
        raise GatewayRejected(
            description,
            provider_status=response.status_code,
            provider_code=body.get("errCode"),
        )
    return body


def create_invoice(
    amount: int,
    currency: str,
    description: str,
    reference: str,
    redirect_url: Optional[str] = None,
    callback_url: Optional[str] = None,
    validity: Optional[int] = None,
) -> InvoiceResult:
    """Create a checkout invoice (amount in minor units)"""
    if currency not in CURRENCY_CODES:
        raise GatewayRejected(f"Unsupported currency: {currency}")

    payload = {
        "amount": amount,
        "ccy": CURRENCY_CODES[currency],
        "merchantPaymInfo": {
            "reference": reference,
            "destination": description,
        },
        "redirectUrl": redirect_url or settings.MONOBANK_REDIRECT_URL,
        "webHookUrl": callback_url or settings.MONOBANK_WEBHOOK_URL,
        "validity": validity or settings.MONOBANK_INVOICE_VALIDITY_SECONDS,
        "paymentType": "debit",
    }
    body = _request("POST", "/merchant/invoice/create", json=payload)
    invoice_id = body.get("invoiceId")
    page_url = body.get("pageUrl")
    if not invoice_id or not page_url:
        raise GatewayUnavailable("Monobank invoice response is missing invoiceId/pageUrl")

    logger.info(f"Monobank invoice created: invoice={invoice_id}, reference={reference}, amount={amount} {currency}")
    return InvoiceResult(invoice_id=invoice_id, checkout_url=page_url)


def get_invoice_status(invoice_id: str) -> MonobankInvoiceEvent:
    """Authoritative invoice state"""
    body = _request("GET", "/merchant/invoice/status", params={"invoiceId": invoice_id})
    try:
        return MonobankInvoiceEvent.model_validate(body)
    except PydanticValidationError as e:
        raise GatewayUnavailable(f"Malformed invoice status for {invoice_id}") from e


def cancel_invoice(invoice_id: str) -> bool:
    """Invalidate an unpaid invoice"""
    _request("POST", "/merchant/invoice/remove", json={"invoiceId": invoice_id})
    logger.info(f"Monobank invoice cancelled: invoice={invoice_id}")
    return True


def refund_invoice(invoice_id: str, amount: Optional[int] = None, comment: Optional[str] = None) -> dict:
    """Refund a paid invoice, fully when ``amount`` is omitted"""
    payload = {"invoiceId": invoice_id}
    if amount is not None:
        payload["amount"] = amount
    if comment:
        payload["comment"] = comment
    body = _request("POST", "/merchant/invoice/cancel", json=payload)
    logger.info(f"Monobank refund requested: invoice={invoice_id}, amount={amount or 'full'}")
    return body


def verify_signature(raw_body: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 (hex) of the raw webhook body"""
    secret = settings.MONOBANK_WEBHOOK_SECRET
    if not secret:
        logger.error("MONOBANK_WEBHOOK_SECRET is not configured, rejecting webhook")
        return False
    if not signature:
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())
