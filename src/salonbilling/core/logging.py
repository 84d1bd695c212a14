"""structlog setup for the billing engine.

Development gets colored console lines and production gets one JSON object
per line. Entries carry the request's correlation id and, inside a billing
operation, the salon it acts on.
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)
tenant_id_ctx: ContextVar[str | None] = ContextVar("tenant_id", default=None)

SERVICE_NAME = "salonbilling"

# Values the processor hands back that must never reach a log sink.
REDACTED_KEYS = frozenset({"client_secret", "payment_method_token", "api_key", "webhook_secret"})

_QUIET_LIBRARIES = ("stripe", "sqlalchemy.engine", "asyncio")


def get_correlation_id() -> str | None:
    return correlation_id_ctx.get()


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Store ``correlation_id``, minting a UUID4 when the caller sent none."""
    value = correlation_id or str(uuid.uuid4())
    correlation_id_ctx.set(value)
    return value


def clear_correlation_id() -> None:
    correlation_id_ctx.set(None)


@contextmanager
def tenant_context(tenant_id: str) -> Iterator[None]:
    """Tag every entry logged inside the block with ``tenant_id``.

    Blocks nest; leaving one restores the outer salon.
    """
    token = tenant_id_ctx.set(tenant_id)
    try:
        yield
    finally:
        tenant_id_ctx.reset(token)


def add_correlation_id(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    correlation_id = correlation_id_ctx.get()
    if correlation_id:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def add_tenant_id(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """An explicit ``tenant_id`` at the call site wins over the context."""
    tenant_id = tenant_id_ctx.get()
    if tenant_id:
        event_dict.setdefault("tenant_id", tenant_id)
    return event_dict


def add_service_context(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = SERVICE_NAME
    return event_dict


def redact_secrets(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def drop_color_message_key(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    # uvicorn duplicates its message with ANSI codes under this key.
    event_dict.pop("color_message", None)
    return event_dict


def configure_logging(*, json_logs: bool = False, log_level: str = "INFO") -> None:
    """Route structlog and stdlib logging through one stdout handler.

    Args:
        json_logs: Emit JSON lines instead of colored console output.
        log_level: Minimum level for the root logger, case-insensitive.
    """
    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_correlation_id,
        add_tenant_id,
        add_service_context,
        redact_secrets,
        drop_color_message_key,
    ]

    renderer: Processor
    if json_logs:
        pre_chain.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(log_level.upper())

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    # The stripe SDK logs each request, bodies included, at INFO.
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger


class LoggerMixin:
    """Gives billing services a ``logger`` named after the class.

    Usage:
        class SubscriptionLifecycle(LoggerMixin):
            async def upgrade(self, ...):
                self.logger.info("subscription_upgraded", tier="enterprise")
    """

    @property
    def logger(self) -> structlog.stdlib.BoundLogger:
        return get_logger(type(self).__name__)


def bind_contextvars(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_contextvars(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_contextvars() -> None:
    structlog.contextvars.clear_contextvars()
