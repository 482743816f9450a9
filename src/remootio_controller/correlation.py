"""Per-action correlation ids carried through a context variable.

Each orchestrator action runs inside ``correlation_context`` so the
orchestrator, engine and transport log lines for that action share one id.
Background loops call ``ensure_correlation_id`` once at task entry; tasks
copy the context of their creator, so a loop started inside an action scope
keeps that action's id.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

__all__ = ["correlation_context", "ensure_correlation_id", "get_correlation_id"]

_current: contextvars.ContextVar[str | None] = contextvars.ContextVar("remootio_correlation_id", default=None)


def get_correlation_id() -> str | None:
    return _current.get()


@contextmanager
def correlation_context(correlation_id: str | None = None, auto_generate: bool = True) -> Iterator[str | None]:
    """Bind an id for the duration of the block.

    Without ``correlation_id`` a fresh uuid4 hex is bound, or nothing at all
    when ``auto_generate`` is false. The outer id is back in place on exit,
    including when the block raises.
    """
    if correlation_id is None and auto_generate:
        correlation_id = uuid.uuid4().hex
    token = _current.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _current.reset(token)


def ensure_correlation_id() -> str:
    """Return the bound id, binding a new one to the current context if unset."""
    correlation_id = _current.get()
    if correlation_id is None:
        correlation_id = uuid.uuid4().hex
        _ = _current.set(correlation_id)
    return correlation_id
