"""Socket.IO channel for real-time sync."""

from .manager import SocketIOTransport, create_server
from .auth import TokenAuth

__all__ = [
    "SocketIOTransport",
    "TokenAuth",
    "create_server",
]
