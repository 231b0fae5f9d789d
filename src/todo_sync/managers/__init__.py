"""
Managers package for the todo-sync core.
"""

from .base import BaseManager, ManagerState, HealthStatus
from .sync import SyncCore, ConnectResult

__all__ = [
    # Base
    'BaseManager',
    'ManagerState',
    'HealthStatus',

    # Sync core
    'SyncCore',
    'ConnectResult',
]
