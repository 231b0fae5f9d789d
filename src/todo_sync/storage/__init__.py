"""
Storage components for the todo-sync core.
"""

from .database import Database

__all__ = [
    'Database',
]
