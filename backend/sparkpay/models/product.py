"""
Product variants and pickup (buy online, pick up in store) orders.

Key design decisions:
- `reserved_stock` holds units for unpaid orders; physical `stock` only drops
  at pickup. `version` backs the compare-and-swap reservation loop
- `pickup_code` is unique when present and is written once, by a conditional
  UPDATE that only matches while it is still NULL
- `stock_released_at` is the idempotency stamp for returning held units
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
)
from sqlalchemy.orm import relationship

from sparkpay.db.base import Base, TimestampMixin
from sparkpay.models.enums import PaymentStatus, PickupStatus, ProductOrderStatus


class ProductVariant(Base, TimestampMixin):
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Integer, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    reserved_stock = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("stock >= 0", name="check_variant_stock_non_negative"),
        CheckConstraint("reserved_stock >= 0", name="check_variant_reserved_non_negative"),
    )

    @property
    def available_stock(self) -> int:
        return self.stock - self.reserved_stock

    def __repr__(self) -> str:
        return f"<ProductVariant(id={self.id}, stock={self.stock}, reserved={self.reserved_stock})>"


class ProductOrder(Base, TimestampMixin):
    __tablename__ = "order_products"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(40), nullable=False, unique=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=ProductOrderStatus.AWAITING_PAYMENT.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.UNPAID.value)
    subtotal = Column(Integer, nullable=False)
    total = Column(Integer, nullable=False)
    payment_url = Column(String(1024), nullable=True)
    payment_data = Column(JSON, nullable=True)
    payment_expired_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)

    pickup_code = Column(String(20), nullable=True, unique=True)
    pickup_status = Column(String(20), nullable=True)
    pickup_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Idempotency marker for returning reserved stock
    stock_released_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship("ProductOrderItem", back_populates="order", lazy="selectin")

    __table_args__ = (
        CheckConstraint(
            "status IN ('awaiting_payment', 'processing', 'requires_review', 'cancelled', 'expired')",
            name="check_order_product_status",
        ),
        CheckConstraint(
            "payment_status IN ('unpaid', 'paid', 'failed', 'refunded')",
            name="check_order_product_payment_status",
        ),
        Index("ix_order_products_payment_status", "payment_status"),
    )

    @property
    def is_pickup_completed(self) -> bool:
        return self.pickup_status == PickupStatus.COMPLETED.value

    def __repr__(self) -> str:
        return f"<ProductOrder(number={self.order_number}, status={self.status}, payment={self.payment_status})>"


class ProductOrderItem(Base, TimestampMixin):
    __tablename__ = "order_product_items"

    id = Column(Integer, primary_key=True, index=True)
    order_product_id = Column(
        Integer, ForeignKey("order_products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_variant_id = Column(Integer, ForeignKey("product_variants.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)
    subtotal = Column(Integer, nullable=False)

    order = relationship("ProductOrder", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_order_product_item_quantity_positive"),
    )
