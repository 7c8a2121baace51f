"""
Status vocabularies stored on orders and tickets.

Columns hold the plain string values so rows stay readable from SQL and
from the audit log payloads.
"""

from enum import Enum


class OrderKind(str, Enum):
    TICKET = "ticket"
    PRODUCT = "product"


class PaymentOutcome(str, Enum):
    """Internal payment status produced by the gateway status mapper."""

    PAID = "paid"
    PENDING = "pending"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    FAILED = "failed"


FAILURE_OUTCOMES = frozenset({PaymentOutcome.EXPIRED, PaymentOutcome.FAILED, PaymentOutcome.REFUNDED})


class TicketOrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"
    REFUNDED = "refunded"


class ProductOrderStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PROCESSING = "processing"
    REQUIRES_REVIEW = "requires_review"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PickupStatus(str, Enum):
    PENDING_PICKUP = "pending_pickup"
    PENDING_REVIEW = "pending_review"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PurchasedTicketStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"
