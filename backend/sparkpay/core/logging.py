"""
structlog setup shared by the API process and the maintenance jobs.

JSON lines in production, colored console output elsewhere. Payment flows
bind the order number into the context so every line emitted while handling
one order (webhook, sync, sweep) can be correlated, and credential-bearing
fields are masked before anything is rendered.
"""

import logging
import sys
from typing import Optional

import structlog
from structlog.types import EventDict, Processor

from sparkpay.core.config import get_settings

# Keys that may carry gateway credentials or signatures
SENSITIVE_KEYS = frozenset({"signature_key", "server_key", "authorization", "token", "secret"})
NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore")

_configured = False


def mask_sensitive(logger, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and len(value) > 8:
            event_dict[key] = f"{value[:4]}***"
        elif value:
            event_dict[key] = "***"
    return event_dict


def _pre_chain(production: bool) -> list[Processor]:
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        mask_sensitive,
    ]
    if production:
        chain.append(structlog.processors.format_exc_info)
    return chain


def setup_logging() -> None:
    global _configured
    if _configured:
        return

    settings = get_settings()
    production = settings.ENVIRONMENT == "production"
    pre_chain = _pre_chain(production)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: Processor = (
        structlog.processors.JSONRenderer() if production else structlog.dev.ConsoleRenderer(colors=True)
    )
    handler = logging.StreamHandler(sys.stdout)
    # foreign_pre_chain gives stdlib records (uvicorn, alembic) the same fields
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_order_context(order_number: Optional[str], kind: Optional[str] = None) -> None:
    """Attach the order being processed to all subsequent log lines of this request."""
    values = {"order_number": order_number}
    if kind:
        values["order_kind"] = kind
    structlog.contextvars.bind_contextvars(**values)
