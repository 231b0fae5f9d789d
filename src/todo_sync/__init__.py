"""
todo-sync - Real-time synchronization core for a multi-device todo app.

This package keeps each item's lifecycle state consistent across every device
a user is logged into:
- Item lifecycle state machine
- Per-user event log with delivery bookkeeping
- Presence tracking with heartbeat eviction
- Ordered fan-out to live sessions
- Reconciliation of reconnecting sessions
"""

__version__ = "0.1.0"

__all__ = [
    '__version__',
]
