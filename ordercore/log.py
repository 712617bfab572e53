"""JSON logging with request correlation.

Every logger handed out by :func:`get_logger` is a child of the ``ordercore``
logger, which owns a single stream handler formatting records as JSON. The
current request id is kept in a ContextVar so code deep in the call chain
can log with correlation without receiving the id explicitly.
"""

import contextvars
import logging
import uuid
from contextlib import contextmanager
from logging import Filter, LogRecord

from pythonjsonlogger.json import JsonFormatter

from . import settings

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
ROOT_LOGGER = "ordercore"


class RequestIdFilter(Filter):
    """Attach a ``request_id`` attribute to log records.

    The value comes from ``REQUEST_ID_CTX``. A hyphen is used when no id is
    set so formatters can always reference ``%(request_id)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        return True


def _configure_root() -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
        h.addFilter(RequestIdFilter())
        logger.addHandler(h)
        logger.setLevel(getattr(settings, "LOG_LEVEL", "INFO"))
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``ordercore`` hierarchy.

    Args:
        name: Usually ``__name__`` of the calling module. Names outside the
            package are nested under ``ordercore``.

    Returns:
        logging.Logger: Logger whose records reach the JSON handler.
    """
    _configure_root()
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


@contextmanager
def request_context(request_id: str | None = None):
    """Bind a request id to the current context for the duration of a block.

    The id is reused when the caller supplies one (for example from an
    ``X-Request-ID`` header); otherwise a UUID4 string is generated.

    Yields:
        str: The request id in effect inside the block.
    """
    rid = request_id or str(uuid.uuid4())
    token = REQUEST_ID_CTX.set(rid)
    try:
        yield rid
    finally:
        REQUEST_ID_CTX.reset(token)
