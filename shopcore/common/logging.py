"""JSON log lines tagged with the order, payment and webhook event in scope.

Correlation ids live in context vars so that every line written while an
order unit, a gateway call or a webhook delivery is running carries them,
including lines from the sweeper and the outbox relay tasks.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from shopcore.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")

_CORRELATION = {
    "trace_id": trace_id_ctx,
    "order_id": order_id_ctx,
    "payment_id": payment_id_ctx,
    "event_id": event_id_ctx,
}


@contextmanager
def log_context(**ids: str | None):
    """Tag log lines inside the block; empty ids leave the outer value alone."""

    tokens = [(_CORRELATION[name], _CORRELATION[name].set(value)) for name, value in ids.items() if value]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in _CORRELATION.items():
            setattr(record, name, var.get())
        return True


def configure_logging() -> None:
    """Install the JSON handler on the root logger; safe to call again."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    fields = " ".join(f"%({name})s" for name in ("asctime", "levelname", "service_name", *_CORRELATION, "message"))
    handler.setFormatter(JsonFormatter(fields, rename_fields={"asctime": "ts", "levelname": "level"}))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("shopcore")
