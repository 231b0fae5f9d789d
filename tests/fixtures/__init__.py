"""
Test fixtures for todo-sync.

Provides reusable test data and transport doubles.
"""

from .sync_fixtures import T0, at, RecordingTransport, SyncFixtures

__all__ = [
    "T0",
    "at",
    "RecordingTransport",
    "SyncFixtures",
]
