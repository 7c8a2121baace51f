"""
Pydantic schemas for gateway notifications, status sync and order actions.
"""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class GatewayNotification(BaseModel):
    """
    Inbound gateway notification. Unknown fields are kept so the raw payload
    lands in the audit log and in payment_data as sent. status_code and
    gross_amount stay untyped: the signature is computed over their literal
    values.
    """

    model_config = ConfigDict(extra="allow")

    order_id: Optional[str] = None
    transaction_status: Optional[str] = None
    fraud_status: Optional[str] = None
    status_code: Any = None
    gross_amount: Any = None
    signature_key: Optional[str] = None


class SyncRequest(BaseModel):
    order_number: str = Field(..., min_length=1, max_length=40)


class WebhookAck(BaseModel):
    status: str = "ok"


class SyncResponse(BaseModel):
    status: str = "ok"
    order: dict


class CancelResponse(BaseModel):
    status: str = "ok"
    result: str  # cancelled | noop
    reason: Optional[str] = None
    order: dict


class ReconcileResponse(BaseModel):
    status: str = "ok"
    ticket_fix_count: int
    ticket_release_count: int
    product_fix_count: int
    product_release_count: int
    ticket_expired_count: int
    product_expired_count: int


class ExpireTicketsResponse(BaseModel):
    status: str = "ok"
    expired_count: int
