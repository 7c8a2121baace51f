"""
Tests for gateway status translation and the order transition guards.
"""

import pytest

from sparkpay.models.enums import PaymentOutcome, PaymentStatus, ProductOrderStatus
from sparkpay.services.payment_effects import next_product_state, next_ticket_status
from sparkpay.services.status_mapper import map_gateway_status, product_order_status, product_payment_status


@pytest.mark.parametrize(
    "transaction_status, fraud_status, expected",
    [
        ("settlement", None, PaymentOutcome.PAID),
        ("capture", "accept", PaymentOutcome.PAID),
        ("capture", None, PaymentOutcome.PAID),
        ("capture", "challenge", PaymentOutcome.PENDING),
        ("capture", "", PaymentOutcome.PENDING),
        ("pending", None, PaymentOutcome.PENDING),
        ("expire", None, PaymentOutcome.EXPIRED),
        ("refund", None, PaymentOutcome.REFUNDED),
        ("partial_refund", None, PaymentOutcome.REFUNDED),
        ("deny", None, PaymentOutcome.FAILED),
        ("cancel", None, PaymentOutcome.FAILED),
        ("failure", None, PaymentOutcome.FAILED),
        ("  SETTLEMENT ", None, PaymentOutcome.PAID),
    ],
)
def test_known_statuses(transaction_status, fraud_status, expected):
    assert map_gateway_status(transaction_status, fraud_status) == expected


@pytest.mark.parametrize("value", [None, "", "authorize", "something-new", 42, object()])
def test_unknown_statuses_map_to_pending(value):
    """Unrecognised input never grants or revokes anything."""
    assert map_gateway_status(value) == PaymentOutcome.PENDING


def test_product_vocabulary():
    assert product_payment_status(PaymentOutcome.PAID) == PaymentStatus.PAID
    assert product_payment_status(PaymentOutcome.EXPIRED) == PaymentStatus.FAILED
    assert product_payment_status(PaymentOutcome.REFUNDED) == PaymentStatus.REFUNDED
    assert product_payment_status(PaymentOutcome.PENDING) == PaymentStatus.UNPAID

    assert product_order_status(PaymentOutcome.FAILED, "awaiting_payment") == ProductOrderStatus.CANCELLED.value
    assert product_order_status(PaymentOutcome.EXPIRED, "awaiting_payment") == ProductOrderStatus.EXPIRED.value
    assert product_order_status(PaymentOutcome.REFUNDED, "processing") == "processing"


def test_paid_ticket_order_is_never_downgraded():
    for outcome in (PaymentOutcome.PENDING, PaymentOutcome.EXPIRED, PaymentOutcome.FAILED):
        assert next_ticket_status("paid", outcome) == "paid"
    assert next_ticket_status("paid", PaymentOutcome.REFUNDED) == "refunded"


def test_failed_ticket_order_accepts_late_settlement_only():
    assert next_ticket_status("expired", PaymentOutcome.PENDING) == "expired"
    assert next_ticket_status("failed", PaymentOutcome.EXPIRED) == "failed"
    assert next_ticket_status("expired", PaymentOutcome.PAID) == "paid"
    assert next_ticket_status("refunded", PaymentOutcome.PAID) == "refunded"


def test_product_state_guards():
    assert next_product_state("processing", "paid", PaymentOutcome.EXPIRED) == ("processing", "paid")
    assert next_product_state("processing", "paid", PaymentOutcome.REFUNDED) == ("processing", "refunded")
    assert next_product_state("cancelled", "failed", PaymentOutcome.PENDING) == ("cancelled", "failed")
    assert next_product_state("expired", "failed", PaymentOutcome.PAID) == ("processing", "paid")
    assert next_product_state("awaiting_payment", "unpaid", PaymentOutcome.EXPIRED) == ("expired", "failed")
