"""
Progress tracking for long-running operations.

A Tracker holds one operation's current state and details plus the set
of observer connections watching it. Every update is pushed to all
attached observers before update() returns. Observers that fail to
receive a message are dropped.

Usage:
    tracker = registry.create()
    tracker.wait_for_signal(Scope(timeout=5.0))   # someone is watching
    tracker.update("Running", {"pct": 10})
    tracker.update("Done")                        # clears details
"""

import logging
import threading
import time
import uuid
from typing import Any, Callable, Mapping, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError
from pydantic_core import PydanticSerializationError

from .scope import Scope

logger = logging.getLogger(__name__)

DEFAULT_WAIT_TIMEOUT = 60.0
INITIAL_STATE = "Pending"


class ProgressMessage(BaseModel):
    """Message pushed to observers on every update."""
    state: str
    details: Optional[dict[str, Any]] = None


@runtime_checkable
class ObserverConnection(Protocol):
    """A remote watcher: accepts JSON-serializable messages and can be closed."""

    def send_json(self, message: dict[str, Any]) -> None:
        """Deliver one message; raise if the connection is dead."""
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class Progress(Protocol):
    """What business code may do with the current operation's tracker."""

    @property
    def id(self) -> str:
        ...

    def update(self, state: str, details: Optional[Mapping[str, Any]] = None) -> None:
        ...

    def wait_for_signal(
        self,
        scope: Optional[Scope] = None,
        *cleanup: Callable[[], Any],
    ) -> None:
        ...


def _build_message(
    tracker_id: str,
    state: str,
    details: Optional[Mapping[str, Any]],
) -> tuple[ProgressMessage, dict[str, Any]]:
    """Validated message and its JSON form; unserializable details become None."""
    if details is not None:
        details = {str(key): value for key, value in details.items()}
    try:
        message = ProgressMessage(state=state, details=details)
        return message, message.model_dump(mode="json")
    except (ValidationError, PydanticSerializationError) as e:
        logger.warning(f"Dropping details of {tracker_id} update {state!r}: {e}")
    message = ProgressMessage(state=state)
    return message, message.model_dump(mode="json")


class NoopTracker:
    """Stand-in used when no tracker is bound; every call succeeds and does nothing."""

    @property
    def id(self) -> str:
        return ""

    def update(self, state: str, details: Optional[Mapping[str, Any]] = None) -> None:
        pass

    def wait_for_signal(
        self,
        scope: Optional[Scope] = None,
        *cleanup: Callable[[], Any],
    ) -> None:
        return None

    def __repr__(self) -> str:
        return "<NoopTracker>"


class Tracker:
    """
    Thread-safe state holder and broadcaster for one operation.

    State, details, the observer set and the started flag are only ever
    changed while holding the tracker's lock, so concurrent updates are
    fully serialized and never interleave their broadcasts.
    """

    def __init__(
        self,
        tracker_id: Optional[str] = None,
        default_wait_timeout: float = DEFAULT_WAIT_TIMEOUT,
    ):
        self._id = tracker_id or str(uuid.uuid4())
        self._state = INITIAL_STATE
        self._details: Optional[dict[str, Any]] = None
        self._observers: set[ObserverConnection] = set()
        self._lock = threading.Lock()
        self._started = threading.Event()
        self._waiters: set[threading.Event] = set()
        self._updated_at = time.monotonic()
        self.default_wait_timeout = default_wait_timeout

    @property
    def id(self) -> str:
        return self._id

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def details(self) -> Optional[dict[str, Any]]:
        with self._lock:
            return None if self._details is None else dict(self._details)

    @property
    def started(self) -> bool:
        """True once any observer has ever attached."""
        return self._started.is_set()

    @property
    def observer_count(self) -> int:
        with self._lock:
            return len(self._observers)

    @property
    def updated_at(self) -> float:
        """time.monotonic() of the last update, attach or detach."""
        with self._lock:
            return self._updated_at

    def snapshot(self) -> ProgressMessage:
        """Current state and details as one consistent message."""
        with self._lock:
            return self._message()

    def _message(self) -> ProgressMessage:
        details = None if self._details is None else dict(self._details)
        return ProgressMessage(state=self._state, details=details)

    def update(self, state: str, details: Optional[Mapping[str, Any]] = None) -> None:
        """
        Replace state and details, then push them to every observer.

        Details are replaced, not merged; omitting them clears the
        previous details. Keys are coerced to str. Details that cannot be
        serialized to JSON are dropped with a warning and the state is
        still broadcast. Observers whose send fails are detached and
        closed. Nothing is ever raised to the caller.
        """
        message, payload = _build_message(self._id, str(state), details)
        with self._lock:
            self._state = message.state
            self._details = message.details
            self._updated_at = time.monotonic()
            self._broadcast(payload)

    def _broadcast(self, message: dict[str, Any]) -> None:
        """Send to a snapshot of observers. Caller holds the lock."""
        for conn in list(self._observers):
            try:
                conn.send_json(message)
            except Exception as e:
                logger.debug(f"Dropping observer of {self._id}: {e}")
                self._remove(conn)

    def wait_for_signal(
        self,
        scope: Optional[Scope] = None,
        *cleanup: Callable[[], Any],
    ) -> None:
        """
        Block until the first observer attaches.

        If the scope is cancelled or its deadline passes first, every
        cleanup callable runs in the given order and the scope's error
        (Cancelled or DeadlineExceeded) is raised. A scope without a
        deadline is bounded by default_wait_timeout.

        The start signal is a latch: once the first observer attached,
        every current and later call returns immediately.
        """
        if scope is None:
            scope = Scope()
        if scope.deadline is None:
            with scope.with_timeout(self.default_wait_timeout) as bounded:
                self._wait_started(bounded, cleanup)
        else:
            self._wait_started(scope, cleanup)

    def _wait_started(self, scope: Scope, cleanup) -> None:
        wake = threading.Event()
        with self._lock:
            if self._started.is_set():
                return
            self._waiters.add(wake)
        scope.add_done_callback(wake.set)
        try:
            while not self._started.is_set():
                error = scope.error()
                if error is not None:
                    for cleanup_func in cleanup:
                        cleanup_func()
                    raise error
                wake.wait(scope.remaining())
        finally:
            scope.remove_done_callback(wake.set)
            with self._lock:
                self._waiters.discard(wake)

    def attach(self, conn: ObserverConnection) -> None:
        """Add an observer; the first attach ever fires the start signal."""
        with self._lock:
            if not self._started.is_set():
                self._started.set()
                for wake in self._waiters:
                    wake.set()
                logger.debug(f"First observer attached to {self._id}")
            self._observers.add(conn)
            self._updated_at = time.monotonic()

    def detach(self, conn: ObserverConnection) -> None:
        """Remove and close an observer. No-op if it is not attached."""
        with self._lock:
            self._remove(conn)

    def _remove(self, conn: ObserverConnection) -> None:
        """Caller holds the lock."""
        if conn not in self._observers:
            return
        self._observers.discard(conn)
        self._updated_at = time.monotonic()
        try:
            conn.close()
        except Exception as e:
            logger.debug(f"Error closing observer of {self._id}: {e}")

    def __repr__(self) -> str:
        return f"<Tracker id={self._id} state={self._state!r}>"
