"""Request-id logging context.

The HTTP middleware stores the incoming ``X-Request-ID`` (or a generated one)
in a ContextVar; ``RequestIdFilter`` copies it onto every record so the format
string can include ``%(request_id)s``.

Usage:
    from booking_backend.logging_context import set_request_id, install_request_id_filter

    install_request_id_filter()
    set_request_id("req-abc123")
    logging.getLogger(__name__).info("booking committed")
"""

import logging
from contextvars import ContextVar, Token
from typing import Optional

_request_id: ContextVar[str] = ContextVar("request_id", default="-")


def set_request_id(request_id: str) -> Token:
    return _request_id.set(request_id)


def reset_request_id(token: Token) -> None:
    _request_id.reset(token)


def get_request_id() -> str:
    return _request_id.get()


class RequestIdFilter(logging.Filter):
    """Injects request_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()  # type: ignore[attr-defined]
        return True


def install_request_id_filter(logger: Optional[logging.Logger] = None) -> None:
    """Attach the filter to the handlers of ``logger`` (root by default).

    Handler filters see records propagated from child loggers, logger filters
    do not, so the filter goes on the handlers.
    """
    target = logger or logging.getLogger()
    for handler in target.handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())
