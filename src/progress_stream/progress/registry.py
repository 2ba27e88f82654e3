"""
Registry of live trackers, keyed by operation id.

One Registry is built at service start and handed to everything that
needs it; tests build their own. The registry lock only guards the id
map. Work on a tracker happens under that tracker's own lock, so a
broadcast on one tracker never blocks lookups of another.
"""

import logging
import threading
import time
from typing import Optional, TYPE_CHECKING

from .scope import Scope
from .tracker import DEFAULT_WAIT_TIMEOUT, ObserverConnection, Tracker

if TYPE_CHECKING:
    from progress_stream.config import ProgressConfig

logger = logging.getLogger(__name__)


class Registry:
    """Creates, finds and deletes trackers; streams them to observers."""

    def __init__(self, default_wait_timeout: float = DEFAULT_WAIT_TIMEOUT):
        self.default_wait_timeout = default_wait_timeout
        self._trackers: dict[str, Tracker] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: "ProgressConfig") -> "Registry":
        return cls(default_wait_timeout=config.default_wait_timeout)

    def create(self) -> Tracker:
        """Create and store a tracker with a fresh id."""
        tracker = Tracker(default_wait_timeout=self.default_wait_timeout)
        with self._lock:
            self._trackers[tracker.id] = tracker
        logger.info(f"Created progress tracker {tracker.id}")
        return tracker

    def get(self, tracker_id: str) -> Optional[Tracker]:
        """The tracker for tracker_id, or None if there is none."""
        with self._lock:
            return self._trackers.get(tracker_id)

    def delete(self, tracker_id: str) -> None:
        """
        Forget a tracker.

        Attached observers are not closed; they detach when their own
        stream scope ends. Delete only after completion was reported.
        """
        with self._lock:
            removed = self._trackers.pop(tracker_id, None)
        if removed is not None:
            logger.info(f"Deleted progress tracker {tracker_id}")

    def stream(self, scope: Scope, conn: ObserverConnection, tracker_id: str) -> None:
        """
        Attach conn to a tracker until scope ends, then detach and close it.

        Blocks for the whole life of the connection, so run it on its own
        thread. An unknown id closes the connection immediately.
        """
        tracker = self.get(tracker_id)
        if tracker is None:
            logger.debug(f"No tracker {tracker_id}; closing observer")
            conn.close()
            return

        tracker.attach(conn)
        try:
            scope.wait()
        finally:
            tracker.detach(conn)

    def sweep(self, max_idle: float) -> list[str]:
        """
        Delete trackers with no observers that have been idle for max_idle seconds.

        Returns the removed ids.
        """
        cutoff = time.monotonic() - max_idle
        with self._lock:
            candidates = list(self._trackers.items())

        # Trackers are inspected outside the registry lock.
        idle = [
            (tracker_id, tracker)
            for tracker_id, tracker in candidates
            if tracker.observer_count == 0 and tracker.updated_at <= cutoff
        ]

        stale = []
        with self._lock:
            for tracker_id, tracker in idle:
                if self._trackers.get(tracker_id) is tracker:
                    del self._trackers[tracker_id]
                    stale.append(tracker_id)
        if stale:
            logger.info(f"Swept {len(stale)} idle progress tracker(s)")
        return stale

    def __len__(self) -> int:
        with self._lock:
            return len(self._trackers)

    def __contains__(self, tracker_id: object) -> bool:
        with self._lock:
            return tracker_id in self._trackers
