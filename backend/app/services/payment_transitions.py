"""Payment status transitions shared by webhook ingestion, polling, cancellation and refunds"""
from enum import Enum
from typing import Optional

from app.models.payment import PAYMENT_STATUSES


class Transition(str, Enum):
    APPLY = "apply"
    DUPLICATE = "duplicate"
    ANOMALY = "anomaly"


# open statuses in the order the gateway moves through them
OPEN_ORDER = {"created": 0, "pending": 1, "processing": 2}
SETTLED_STATUSES = ("success", "failed", "cancelled")

# Monobank invoice status -> payment status
PROVIDER_STATUS_MAP = {
    "created": "created",
    "processing": "processing",
    "hold": "processing",
    "success": "success",
    "failure": "failed",
    "expired": "cancelled",
    "reversed": "refunded",
}


def map_provider_status(raw_status: Optional[str]) -> Optional[str]:
    """Provider status to payment status; None when the value is not recognised"""
    if not raw_status:
        return None
    return PROVIDER_STATUS_MAP.get(raw_status.strip().lower())


def resolve_transition(current: str, incoming: str, allow_refund: bool = False) -> Transition:
    """Decide what to do with an incoming status for a payment currently in ``current``.

    Only the refund flow passes ``allow_refund``; a gateway report of a reversal
    for a payment we did not refund is an anomaly.
    """
    if current not in PAYMENT_STATUSES:
        raise ValueError(f"Unknown payment status: {current}")
    if incoming not in PAYMENT_STATUSES:
        raise ValueError(f"Unknown payment status: {incoming}")

    if current == incoming:
        return Transition.DUPLICATE

    if current in OPEN_ORDER:
        if incoming in SETTLED_STATUSES:
            return Transition.APPLY
        if incoming in OPEN_ORDER and OPEN_ORDER[incoming] > OPEN_ORDER[current]:
            return Transition.APPLY
        return Transition.ANOMALY

    if current == "success" and incoming == "refunded" and allow_refund:
        return Transition.APPLY

    return Transition.ANOMALY
