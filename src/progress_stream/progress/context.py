"""
Carry the current operation's tracker through call chains.

Nested business code calls from_context() instead of threading a
tracker parameter through every signature. When nothing is bound it
gets a NoopTracker, so the same code runs with no observer system at
all.
"""

import contextvars
from contextlib import contextmanager
from typing import Iterator, Optional

from .tracker import NoopTracker, Progress

_current: contextvars.ContextVar[Optional[Progress]] = contextvars.ContextVar(
    "progress_tracker", default=None
)

NOOP = NoopTracker()


def inject(tracker: Progress, context: Optional[contextvars.Context] = None) -> contextvars.Context:
    """
    Copy of `context` (default: the current one) with tracker bound.

    Run code under it with ctx.run(func, *args).
    """
    ctx = (context if context is not None else contextvars.copy_context()).copy()
    ctx.run(_current.set, tracker)
    return ctx


def from_context(context: Optional[contextvars.Context] = None) -> Progress:
    """The bound tracker, or the shared NoopTracker."""
    if context is not None:
        tracker = context.get(_current)
    else:
        tracker = _current.get()
    return tracker if tracker is not None else NOOP


@contextmanager
def use_tracker(tracker: Progress) -> Iterator[Progress]:
    """Bind tracker in the current context for the duration of the block."""
    token = _current.set(tracker)
    try:
        yield tracker
    finally:
        _current.reset(token)
