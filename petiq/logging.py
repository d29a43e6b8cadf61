"""JSON logging with per-request correlation fields."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from petiq.config import LOG_LEVEL


request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
customer_ctx: ContextVar[str] = ContextVar("customer", default="")


class ContextFilter(logging.Filter):
    """Inject request and customer identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        record.customer = customer_ctx.get()
        return True


def configure_logging() -> None:
    """Configure the root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter("%(asctime)s %(levelname)s %(name)s %(request_id)s %(customer)s %(message)s")
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(LOG_LEVEL)
