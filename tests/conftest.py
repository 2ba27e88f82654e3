"""Shared fixtures for progress-stream tests."""

import threading
import time

import pytest

from progress_stream.progress import Registry


class RecordingConnection:
    """In-memory observer connection that records what it receives."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages = []
        self.close_calls = 0
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def send_json(self, message):
        if self.fail or self.closed:
            raise ConnectionError("connection is dead")
        with self._lock:
            self.messages.append(message)

    def close(self):
        self.close_calls += 1


def wait_until(predicate, timeout=2.0, interval=0.005):
    """Poll predicate until it is true or timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def conn():
    return RecordingConnection()


@pytest.fixture
def registry():
    return Registry(default_wait_timeout=1.0)
