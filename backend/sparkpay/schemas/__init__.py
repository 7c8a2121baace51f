from sparkpay.schemas.checkout import (
    TicketCheckoutRequest, ProductCheckoutRequest, CheckoutResponse,
)
from sparkpay.schemas.payment import (
    GatewayNotification, SyncRequest, SyncResponse, WebhookAck,
    CancelResponse, ReconcileResponse, ExpireTicketsResponse,
)
from sparkpay.schemas.ticket import AvailabilityResponse, SlotAvailability

__all__ = [
    "TicketCheckoutRequest", "ProductCheckoutRequest", "CheckoutResponse",
    "GatewayNotification", "SyncRequest", "SyncResponse", "WebhookAck",
    "CancelResponse", "ReconcileResponse", "ExpireTicketsResponse",
    "AvailabilityResponse", "SlotAvailability",
]
