# boothpay/domain/payment_status.py

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping


class PaymentOutcome(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"


# Gateway transaction_status values that end a transaction without payment.
TERMINAL_FAILURE_STATUSES = frozenset(
    {
        "deny",
        "cancel",
        "expire",
        "failure",
        "refund",
        "partial_refund",
        "chargeback",
        "partial_chargeback",
    }
)

# Cached payment-record statuses after which a session must not be reused.
TERMINAL_SUCCESS_STATUSES = frozenset({"SETTLEMENT", "CAPTURE", "SUCCESS", "PAID"})


def map_status(snapshot: Mapping[str, Any] | None) -> PaymentOutcome:
    """
    Classify a gateway snapshot. Total over the gateway vocabulary:
    anything unrecognised is PENDING, never PAID.
    """
    if not snapshot:
        return PaymentOutcome.PENDING

    status = str(snapshot.get("transaction_status") or "").strip().lower()
    fraud = str(snapshot.get("fraud_status") or "").strip().lower()

    if status == "capture":
        # A challenged card capture waits for the merchant's decision.
        if fraud == "challenge":
            return PaymentOutcome.PENDING
        return PaymentOutcome.PAID
    if status == "settlement":
        return PaymentOutcome.PAID
    if status in TERMINAL_FAILURE_STATUSES:
        return PaymentOutcome.FAILED
    return PaymentOutcome.PENDING


def parse_gross_amount(snapshot: Mapping[str, Any] | None) -> Decimal | None:
    """Gateway amounts arrive as strings like "100000.00"."""
    if not snapshot:
        return None
    raw = snapshot.get("gross_amount")
    if raw is None or str(raw).strip() == "":
        return None
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def amount_matches(expected: int, gross: Decimal | None, tolerance: int) -> bool:
    if gross is None:
        return False
    return abs(Decimal(expected) - gross) <= tolerance
