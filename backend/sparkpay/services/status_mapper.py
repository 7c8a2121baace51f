"""
Translate gateway transaction/fraud vocabulary into internal payment outcomes.

Pure and total: every input, including None and unknown strings, maps to one
of the five PaymentOutcome values. Unknown statuses map to PENDING so that an
unrecognised notification never grants or revokes an entitlement.
"""

from typing import Any

from sparkpay.models.enums import (
    PaymentOutcome,
    PaymentStatus,
    ProductOrderStatus,
)

_FIXED_OUTCOMES = {
    "settlement": PaymentOutcome.PAID,
    "pending": PaymentOutcome.PENDING,
    "expire": PaymentOutcome.EXPIRED,
    "expired": PaymentOutcome.EXPIRED,
    "refund": PaymentOutcome.REFUNDED,
    "refunded": PaymentOutcome.REFUNDED,
    "partial_refund": PaymentOutcome.REFUNDED,
    "deny": PaymentOutcome.FAILED,
    "cancel": PaymentOutcome.FAILED,
    "failure": PaymentOutcome.FAILED,
}


def _normalize(value: Any) -> str:
    if value is None:
        return ""
    try:
        return str(value).strip().lower()
    except Exception:
        return ""


def map_gateway_status(transaction_status: Any, fraud_status: Any = None) -> PaymentOutcome:
    tx = _normalize(transaction_status)

    if tx == "capture":
        # A card capture is only final once fraud screening accepts it
        if fraud_status is None or _normalize(fraud_status) == "accept":
            return PaymentOutcome.PAID
        return PaymentOutcome.PENDING

    return _FIXED_OUTCOMES.get(tx, PaymentOutcome.PENDING)


def product_payment_status(outcome: PaymentOutcome) -> PaymentStatus:
    if outcome == PaymentOutcome.PAID:
        return PaymentStatus.PAID
    if outcome == PaymentOutcome.REFUNDED:
        return PaymentStatus.REFUNDED
    if outcome in (PaymentOutcome.FAILED, PaymentOutcome.EXPIRED):
        return PaymentStatus.FAILED
    return PaymentStatus.UNPAID


def product_order_status(outcome: PaymentOutcome, current_status: str) -> str:
    if outcome == PaymentOutcome.PAID:
        return ProductOrderStatus.PROCESSING.value
    if outcome == PaymentOutcome.EXPIRED:
        return ProductOrderStatus.EXPIRED.value
    if outcome == PaymentOutcome.FAILED:
        return ProductOrderStatus.CANCELLED.value
    return current_status or ProductOrderStatus.AWAITING_PAYMENT.value
