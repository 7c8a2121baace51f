"""
Outbound integrations. Currently only the Midtrans payment gateway.
"""

from .payment_gateway import (
    GatewayConfigError,
    MidtransGateway,
    PaymentGatewayError,
    get_gateway,
)

__all__ = ['GatewayConfigError', 'MidtransGateway', 'PaymentGatewayError', 'get_gateway']
