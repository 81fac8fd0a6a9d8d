"""Correlation ids for the bridge's engine events.

Every inbound bus message, timer firing and the CLI lifecycle run under their
own id so that all log lines caused by one event can be grouped together.
The id lives in a contextvar, which asyncio copies into each new task.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Generator
from contextlib import contextmanager

__all__ = [
    "event_context",
    "get_correlation_id",
    "new_correlation_id",
]

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "spa_correlation_id",
    default=None,
)


def new_correlation_id(source: str | None = None) -> str:
    """Build a short id, optionally tagged with the event source (``msg``, ``timer``)."""
    token = uuid.uuid4().hex[:12]
    return f"{source}-{token}" if source else token


def get_correlation_id() -> str | None:
    return _correlation_id.get()


@contextmanager
def event_context(source: str | None = None, correlation_id: str | None = None) -> Generator[str]:
    """Run the enclosed block under a correlation id.

    Args:
        source: Tag for generated ids, e.g. ``"msg"`` for inbound bus messages
        correlation_id: Use this id instead of generating one

    Yields:
        The id in effect for the block

    """
    cid = correlation_id or new_correlation_id(source)
    token = _correlation_id.set(cid)
    try:
        yield cid
    finally:
        _correlation_id.reset(token)
