"""
Pydantic schemas for checkout request/response validation.
"""

from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, EmailStr, Field, field_validator


class CustomerInfo(BaseModel):
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_email: EmailStr
    customer_phone: Optional[str] = Field(None, max_length=32)

    @field_validator("customer_name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("customer_name must not be blank")
        return value

    def to_gateway_customer(self) -> dict:
        return {
            "first_name": self.customer_name,
            "email": self.customer_email,
            "phone": self.customer_phone or "",
        }


class TicketCheckoutItem(BaseModel):
    ticket_id: int = Field(..., gt=0)
    date: date
    time_slot: str = Field(..., pattern=r"^(all-day|\d{2}:\d{2})$")
    quantity: int = Field(default=1, gt=0, le=50)


class TicketCheckoutRequest(CustomerInfo):
    items: list[TicketCheckoutItem] = Field(..., min_length=1)


class ProductCheckoutItem(BaseModel):
    product_variant_id: int = Field(..., gt=0)
    quantity: int = Field(default=1, gt=0, le=100)


class ProductCheckoutRequest(CustomerInfo):
    items: list[ProductCheckoutItem] = Field(..., min_length=1)


class CheckoutResponse(BaseModel):
    token: str
    redirect_url: Optional[str]
    order_number: str
    order_id: int
    expires_at: datetime
    payment_window_minutes: int
