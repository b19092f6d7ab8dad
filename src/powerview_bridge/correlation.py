"""
Correlation ids for tracing one unit of work across async hops.

A unit of work is a discovery run for a hub, a single poll tick, or one
inbound shade/scene command travelling MQTT -> router -> hub -> device store.
Every log record carries the id of the unit it was emitted from.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

__all__ = [
    "correlation_context",
    "ensure_correlation_id",
    "get_correlation_id",
]

_current: contextvars.ContextVar[str | None] = contextvars.ContextVar("powerview_correlation_id", default=None)


def _new_id(prefix: str | None) -> str:
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}" if prefix else short


def get_correlation_id() -> str | None:
    return _current.get()


@contextmanager
def correlation_context(correlation_id: str | None = None, prefix: str | None = None) -> Iterator[str]:
    """
    Bind a correlation id for the duration of the block.

    ``prefix`` names the kind of work (``cmd``, ``poll``, ``discover``) when a
    fresh id is generated. Nested blocks restore the outer id on exit.

    Example:
        with correlation_context(prefix="poll"):
            await poller.poll_once()
    """
    cid = correlation_id or _new_id(prefix)
    token = _current.set(cid)
    try:
        yield cid
    finally:
        _current.reset(token)


def ensure_correlation_id() -> str:
    """Id for a task entry point; reuses the inherited one if the task already has it."""
    cid = _current.get()
    if cid is None:
        cid = _new_id(None)
        _ = _current.set(cid)
    return cid
