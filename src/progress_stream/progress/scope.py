"""
Cancellation scopes for blocking progress calls.

A Scope is handed to every call that may block (waiting for the first
observer, holding an observer connection open). It ends in one of two
ways: someone calls cancel(), or its deadline passes. Child scopes
inherit their parent's cancellation and never outlive its deadline.

Usage:
    scope = Scope(timeout=5.0)
    tracker.wait_for_signal(scope)

    with scope.with_timeout(1.0) as child:
        child.wait()
"""

import threading
import time
from typing import Callable, Optional

from .errors import Cancelled, DeadlineExceeded, ProgressError


class Scope:
    """Thread-safe cancellation handle with an optional deadline."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        parent: Optional["Scope"] = None,
    ):
        deadline = None
        if timeout is not None:
            deadline = time.monotonic() + timeout
        if parent is not None and parent.deadline is not None:
            if deadline is None or parent.deadline < deadline:
                deadline = parent.deadline

        self._deadline = deadline
        self._parent = parent
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._error: Optional[ProgressError] = None
        self._callbacks: list[Callable[[], None]] = []

        if parent is not None:
            parent.add_done_callback(self._cancel_from_parent)

    @property
    def deadline(self) -> Optional[float]:
        """Deadline as a time.monotonic() value, or None."""
        return self._deadline

    @property
    def done(self) -> bool:
        return self._cancelled.is_set() or self._expired()

    def _expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline (never negative), or None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def error(self) -> Optional[ProgressError]:
        """Why the scope ended, or None while it is still live."""
        if self._cancelled.is_set():
            return self._error
        if self._expired():
            return DeadlineExceeded()
        return None

    def cancel(self) -> None:
        """End the scope. Calling it again has no effect."""
        self._finish(Cancelled())

    def _cancel_from_parent(self) -> None:
        self._finish(self._parent.error() or Cancelled())

    def _finish(self, error: ProgressError) -> None:
        with self._lock:
            if self._cancelled.is_set():
                return
            # A scope that ran out of time keeps reporting the deadline.
            self._error = DeadlineExceeded() if self._expired() else error
            self._cancelled.set()
            callbacks, self._callbacks = self._callbacks, []

        if self._parent is not None:
            self._parent.remove_done_callback(self._cancel_from_parent)
        for callback in callbacks:
            callback()

    def add_done_callback(self, callback: Callable[[], None]) -> None:
        """
        Run callback when the scope is cancelled.

        Runs immediately if the scope is already cancelled. Deadline expiry
        alone does not trigger callbacks; waiters bound their own waits
        with remaining().
        """
        with self._lock:
            if not self._cancelled.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_done_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def with_timeout(self, timeout: float) -> "Scope":
        """Child scope that ends at the earlier of timeout and this deadline."""
        return Scope(timeout=timeout, parent=self)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the scope is done.

        Returns True once the scope is done, or False if `timeout` seconds
        passed first.
        """
        limit = None if timeout is None else time.monotonic() + timeout
        while not self.done:
            waits = [w for w in (self.remaining(), _until(limit)) if w is not None]
            wait_for = min(waits) if waits else None
            if limit is not None and wait_for <= 0:
                return self.done
            self._cancelled.wait(wait_for)
        return True

    def __enter__(self) -> "Scope":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel()

    def __repr__(self) -> str:
        return f"<Scope done={self.done} remaining={self.remaining()}>"


def _until(limit: Optional[float]) -> Optional[float]:
    if limit is None:
        return None
    return max(0.0, limit - time.monotonic())
