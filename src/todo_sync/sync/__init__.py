"""
Real-time synchronization components.

This package provides the per-user event log, presence tracking, the
broadcaster that fans events out to live sessions, and the reconciler that
replays missed events to reconnecting sessions.
"""

from .event_log import Event, EventKind, EventLog, DeliveryStatus, ExpiryReport
from .presence import PresenceTracker, LiveSession, SessionRecord
from .broadcaster import Broadcaster, PublishReport
from .reconciler import Reconciler, ReconcileResult
from .transport import Transport

__all__ = [
    'Event',
    'EventKind',
    'EventLog',
    'DeliveryStatus',
    'ExpiryReport',
    'PresenceTracker',
    'LiveSession',
    'SessionRecord',
    'Broadcaster',
    'PublishReport',
    'Reconciler',
    'ReconcileResult',
    'Transport',
]
