"""
Append-only audit trail of payment notifications and payment side effects.
Rows are never updated or deleted.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, func

from sparkpay.db.base import Base


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(40), nullable=True, index=True)
    event_type = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=True)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<WebhookLog(order={self.order_number}, event={self.event_type}, success={self.success})>"
