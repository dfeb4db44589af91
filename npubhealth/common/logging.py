"""Structured JSON logging with flow/invoice correlation fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from npubhealth.common.config import settings


flow_id_ctx: ContextVar[str] = ContextVar("flow_id", default="")
invoice_id_ctx: ContextVar[str] = ContextVar("invoice_id", default="")


class ContextFilter(logging.Filter):
    """Stamp the current flow and invoice onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.flow_id = flow_id_ctx.get()
        record.invoice_id = invoice_id_ctx.get()
        return True


@contextmanager
def log_context(flow_id: str | None = None, invoice_id: str | None = None):
    """Bind correlation ids for the duration of a block (per asyncio task)."""

    tokens = []
    if flow_id is not None:
        tokens.append((flow_id_ctx, flow_id_ctx.set(flow_id)))
    if invoice_id is not None:
        tokens.append((invoice_id_ctx, invoice_id_ctx.set(invoice_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging(level: str | None = None) -> None:
    """Route everything through one JSON stdout handler. Call once per process."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(flow_id)s %(invoice_id)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)


logger = logging.getLogger("npubhealth")
