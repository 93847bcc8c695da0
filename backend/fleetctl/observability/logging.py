"""Logging setup: event-name messages enriched with request, device and trace context."""

from __future__ import annotations

import logging
from logging.handlers import SysLogHandler

from opentelemetry import trace

from fleetctl.config import Settings, get_settings
from fleetctl.observability.request_context import get_device_code, get_request_id

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s "
    "device=%(device_code)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
)
SYSLOG_FORMAT = "fleetctl %(name)s %(levelname)s device=%(device_code)s %(message)s"


def _trace_ids() -> tuple[str, str]:
    context = trace.get_current_span().get_span_context()
    if context is None or not context.is_valid:
        return "-", "-"
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


class RequestContextFilter(logging.Filter):
    """Fill the context placeholders used by LOG_FORMAT; never drops a record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id, record.span_id = _trace_ids()
        record.request_id = get_request_id() or "-"
        record.device_code = get_device_code() or "-"
        return True


def configure_logging(settings: Settings | None = None) -> None:
    """Install the context format on the root logger. Safe to call more than once."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format=LOG_FORMAT,
    )
    root = logging.getLogger()

    if settings.syslog_host and not any(isinstance(h, SysLogHandler) for h in root.handlers):
        syslog = SysLogHandler(address=(settings.syslog_host, settings.syslog_port))
        syslog.setLevel(logging.INFO)
        syslog.setFormatter(logging.Formatter(SYSLOG_FORMAT))
        root.addHandler(syslog)

    # Root logger filters are skipped for records propagated from child loggers
    for handler in root.handlers:
        if not any(isinstance(f, RequestContextFilter) for f in handler.filters):
            handler.addFilter(RequestContextFilter())
