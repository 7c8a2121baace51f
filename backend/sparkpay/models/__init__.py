from sparkpay.models.ticket import Ticket, TicketAvailability, PurchasedTicket
from sparkpay.models.order import Order, OrderItem
from sparkpay.models.product import ProductVariant, ProductOrder, ProductOrderItem
from sparkpay.models.webhook_log import WebhookLog

__all__ = [
    "Ticket", "TicketAvailability", "PurchasedTicket",
    "Order", "OrderItem",
    "ProductVariant", "ProductOrder", "ProductOrderItem",
    "WebhookLog",
]
