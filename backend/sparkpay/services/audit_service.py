"""
Webhook log writer.

Audit rows are added to the caller's session so they commit (or roll back)
together with the state change they describe. The exception path is the one
place that writes after a rollback, so the forensic record survives.
"""

from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.core.logging import get_logger
from sparkpay.models.webhook_log import WebhookLog

logger = get_logger(__name__)


def log_webhook_event(
    db: AsyncSession,
    order_number: Optional[str],
    event_type: str,
    payload: Any = None,
    success: bool = True,
    error_message: Optional[str] = None,
) -> WebhookLog:
    entry = WebhookLog(
        order_number=order_number or None,
        event_type=event_type,
        payload=jsonable_encoder(payload) if payload is not None else None,
        success=success,
        error_message=error_message,
    )
    db.add(entry)
    logger.debug("audit_logged", event_type=event_type, success=success)
    return entry


async def log_webhook_exception(
    db: AsyncSession,
    order_number: Optional[str],
    payload: Any,
    error: BaseException,
) -> None:
    """Discard the failed unit of work, then persist an `exception` row on its own."""
    await db.rollback()
    log_webhook_event(db, order_number, "exception", payload, success=False, error_message=str(error) or type(error).__name__)
    await db.commit()
