"""
Progress monitoring module for long-running operations.

Provides per-operation trackers, a registry to look them up by id, and
a WebSocket endpoint that streams tracker updates to observers.
"""

from .errors import ProgressError, Cancelled, DeadlineExceeded
from .scope import Scope
from .tracker import (
    Tracker,
    NoopTracker,
    Progress,
    ProgressMessage,
    ObserverConnection,
)
from .registry import Registry
from .context import inject, from_context, use_tracker
from .server import (
    create_app,
    create_router,
    progress_server,
    ProgressServer,
    WebSocketObserver,
)

__all__ = [
    "ProgressError",
    "Cancelled",
    "DeadlineExceeded",
    "Scope",
    "Tracker",
    "NoopTracker",
    "Progress",
    "ProgressMessage",
    "ObserverConnection",
    "Registry",
    "inject",
    "from_context",
    "use_tracker",
    "create_app",
    "create_router",
    "progress_server",
    "ProgressServer",
    "WebSocketObserver",
]
