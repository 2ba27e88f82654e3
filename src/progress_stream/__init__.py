"""
progress-stream: live progress tracking for long-running operations.

Trackers hold each operation's current state and push every update to
the observers watching it over WebSocket connections.
"""

__version__ = "0.1.0"
