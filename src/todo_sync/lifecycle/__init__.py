"""
Item lifecycle components.

This package provides the status state machine and durable item storage.
"""

from .state_machine import (
    ItemStatus,
    Item,
    LifecycleChange,
    TransitionResult,
    transition,
)
from .store import ItemStore

__all__ = [
    'ItemStatus',
    'Item',
    'LifecycleChange',
    'TransitionResult',
    'transition',
    'ItemStore',
]
