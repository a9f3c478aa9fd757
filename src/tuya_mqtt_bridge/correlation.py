"""
Correlation IDs for tying log lines to the event that caused them.

Each inbound broker message, device event and reconcile tick runs inside its
own correlation scope, so every log line it produces carries the same short id.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Generator
from contextlib import contextmanager

__all__ = [
    "correlation_scope",
    "get_correlation_id",
    "new_correlation_id",
]

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "tuya_bridge_correlation_id",
    default=None,
)


def new_correlation_id() -> str:
    """Return a fresh 8 character hex correlation id."""
    return uuid.uuid4().hex[:8]


def get_correlation_id() -> str | None:
    """Return the correlation id of the current context, if any."""
    return _correlation_id.get()


@contextmanager
def correlation_scope(prefix: str = "", correlation_id: str | None = None) -> Generator[str]:
    """
    Run a block under its own correlation id.

    Args:
        prefix: Optional label prepended to a generated id (e.g. "tick", "rcv")
        correlation_id: Use this id instead of generating one

    Yields:
        The correlation id active inside the block

    Example:
        with correlation_scope("rcv") as corr_id:
            logger.info("Routing command")  # logged with "rcv-1a2b3c4d"
    """
    if correlation_id is None:
        correlation_id = f"{prefix}-{new_correlation_id()}" if prefix else new_correlation_id()
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)
