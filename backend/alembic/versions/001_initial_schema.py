"""Initial schema: catalog, capacity buckets, ticket and product orders, webhook log.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Ticket catalog
    op.create_table(
        "tickets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_tickets_id", "tickets", ["id"])

    # Capacity buckets; NULL time_slot is the all-day bucket and must stay unique too
    op.create_table(
        "ticket_availabilities",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("ticket_id", sa.Integer(), sa.ForeignKey("tickets.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("time_slot", sa.String(5), nullable=True),
        sa.Column("total_capacity", sa.Integer(), nullable=False),
        sa.Column("reserved_capacity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sold_capacity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint(
            "ticket_id", "date", "time_slot",
            name="uq_ticket_availability_bucket",
            postgresql_nulls_not_distinct=True,
        ),
        sa.CheckConstraint("reserved_capacity >= 0", name="check_reserved_capacity_non_negative"),
        sa.CheckConstraint("sold_capacity >= 0", name="check_sold_capacity_non_negative"),
    )
    op.create_index("ix_ticket_availabilities_id", "ticket_availabilities", ["id"])
    op.create_index("ix_ticket_availabilities_ticket_date", "ticket_availabilities", ["ticket_id", "date"])

    # Ticket orders
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_number", sa.String(40), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_id", sa.String(255), nullable=True),
        sa.Column("payment_url", sa.String(1024), nullable=True),
        sa.Column("payment_data", sa.JSON(), nullable=True),
        sa.Column("tickets_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("capacity_released_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'expired', 'failed', 'refunded')",
            name="check_order_status",
        ),
    )
    op.create_index("ix_orders_id", "orders", ["id"])
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_status_expires_at", "orders", ["status", "expires_at"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("ticket_id", sa.Integer(), sa.ForeignKey("tickets.id"), nullable=False),
        sa.Column("selected_date", sa.Date(), nullable=False),
        sa.Column("selected_time_slots", sa.JSON(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Integer(), nullable=False),
        sa.Column("subtotal", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("quantity > 0", name="check_order_item_quantity_positive"),
    )
    op.create_index("ix_order_items_id", "order_items", ["id"])
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "purchased_tickets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("ticket_code", sa.String(32), nullable=False, unique=True),
        sa.Column("order_item_id", sa.Integer(), sa.ForeignKey("order_items.id"), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("ticket_id", sa.Integer(), sa.ForeignKey("tickets.id"), nullable=False),
        sa.Column("valid_date", sa.Date(), nullable=False),
        sa.Column("time_slot", sa.String(5), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        *_timestamps(),
    )
    op.create_index("ix_purchased_tickets_id", "purchased_tickets", ["id"])
    op.create_index("ix_purchased_tickets_order_item_id", "purchased_tickets", ["order_item_id"])
    op.create_index("ix_purchased_tickets_user_id", "purchased_tickets", ["user_id"])
    op.create_index("ix_purchased_tickets_status_valid_date", "purchased_tickets", ["status", "valid_date"])

    # Product catalog and pickup orders
    op.create_table(
        "product_variants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("stock >= 0", name="check_variant_stock_non_negative"),
        sa.CheckConstraint("reserved_stock >= 0", name="check_variant_reserved_non_negative"),
    )
    op.create_index("ix_product_variants_id", "product_variants", ["id"])

    op.create_table(
        "order_products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_number", sa.String(40), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="awaiting_payment"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="unpaid"),
        sa.Column("subtotal", sa.Integer(), nullable=False),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("payment_url", sa.String(1024), nullable=True),
        sa.Column("payment_data", sa.JSON(), nullable=True),
        sa.Column("payment_expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pickup_code", sa.String(20), nullable=True, unique=True),
        sa.Column("pickup_status", sa.String(20), nullable=True),
        sa.Column("pickup_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stock_released_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('awaiting_payment', 'processing', 'requires_review', 'cancelled', 'expired')",
            name="check_order_product_status",
        ),
        sa.CheckConstraint(
            "payment_status IN ('unpaid', 'paid', 'failed', 'refunded')",
            name="check_order_product_payment_status",
        ),
    )
    op.create_index("ix_order_products_id", "order_products", ["id"])
    op.create_index("ix_order_products_order_number", "order_products", ["order_number"], unique=True)
    op.create_index("ix_order_products_user_id", "order_products", ["user_id"])
    op.create_index("ix_order_products_payment_status", "order_products", ["payment_status"])

    op.create_table(
        "order_product_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "order_product_id", sa.Integer(),
            sa.ForeignKey("order_products.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("product_variant_id", sa.Integer(), sa.ForeignKey("product_variants.id"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("subtotal", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("quantity > 0", name="check_order_product_item_quantity_positive"),
    )
    op.create_index("ix_order_product_items_id", "order_product_items", ["id"])
    op.create_index("ix_order_product_items_order_product_id", "order_product_items", ["order_product_id"])

    # Append-only audit trail
    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_number", sa.String(40), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_logs_id", "webhook_logs", ["id"])
    op.create_index("ix_webhook_logs_order_number", "webhook_logs", ["order_number"])
    op.create_index("ix_webhook_logs_event_type", "webhook_logs", ["event_type"])


def downgrade() -> None:
    op.drop_table("webhook_logs")
    op.drop_table("order_product_items")
    op.drop_table("order_products")
    op.drop_table("product_variants")
    op.drop_table("purchased_tickets")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("ticket_availabilities")
    op.drop_table("tickets")
