"""
Logging setup for the checkout service.

Every record carries a ``context`` attribute (the checkout or payment being
worked on) so that the interleaved log lines of concurrent checkouts and
webhook deliveries can be told apart:

    2026-10-19 10:15:30 [INFO    ] [chk_3f9a…] farmmarket.payments - payment pay_1 initiated -> authorized
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from .settings import LOG_FORMAT, LOG_LEVEL

_log_context: ContextVar[str] = ContextVar("farmmarket_log_context", default="-")


class ContextFilter(logging.Filter):
    """Copies the current log context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = _log_context.get()
        return True


@contextmanager
def log_context(value: str) -> Iterator[None]:
    token = _log_context.set(value)
    try:
        yield
    finally:
        _log_context.reset(token)


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> logging.Logger:
    """
    Configure the ``farmmarket`` logger tree.

    Safe to call more than once; existing handlers are replaced.
    """
    logger = logging.getLogger("farmmarket")
    logger.setLevel((level or LOG_LEVEL).upper())
    logger.propagate = False
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=fmt or LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(ContextFilter())
    logger.addHandler(handler)

    logger.info("Logging configured at level %s", logging.getLevelName(logger.level))
    return logger
