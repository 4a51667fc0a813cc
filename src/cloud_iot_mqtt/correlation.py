"""
Correlation ids for connection cycles.

Each pass through the session's reconnect loop runs inside its own correlation
scope, so the disconnect, the renewal decision and the next connect attempt
can be tied together in the logs. Backed by a contextvar, so it is safe across
asyncio tasks.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

__all__ = [
    "correlation_context",
    "ensure_correlation_id",
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
]

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id",
    default=None,
)


def generate_correlation_id() -> str:
    """Return a new UUID4 hex id (32 chars, no dashes)."""
    return uuid.uuid4().hex


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id.set(correlation_id)


@contextmanager
def correlation_context(correlation_id: str | None = None) -> Iterator[str]:
    """
    Run a block under ``correlation_id`` (generated when omitted).

    The previous id is restored on exit.

    Example:
        with correlation_context() as cycle_id:
            logger.info("Connecting")  # tagged with cycle_id
    """
    previous_id = get_correlation_id()
    current_id = correlation_id or generate_correlation_id()
    set_correlation_id(current_id)
    try:
        yield current_id
    finally:
        set_correlation_id(previous_id)


def ensure_correlation_id() -> str:
    """Return the current id, generating and setting one if none is active."""
    current_id = get_correlation_id()
    if current_id is None:
        current_id = generate_correlation_id()
        set_correlation_id(current_id)
    return current_id
