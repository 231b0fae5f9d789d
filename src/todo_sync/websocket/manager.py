"""Socket.IO transport for the sync core."""

import uuid
from typing import Any, Dict, Optional

import socketio
from aiohttp import web

from ..managers.sync import SyncCore
from ..sync.event_log import Event
from ..utils.config import WebSocketConfig
from ..utils.errors import (
    AuthenticationError,
    DeliveryFailure,
    InvalidRequest,
    SyncError,
)
from ..utils.logging import get_logger
from .auth import TokenAuth


logger = get_logger("todo-sync.websocket")


def _event_id(data: Any) -> int:
    """Extract ``event_id`` from an ack payload."""
    value = data.get("event_id") if isinstance(data, dict) else None
    if value is None or isinstance(value, bool):
        raise InvalidRequest("Expected {'event_id': <int>}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise InvalidRequest("event_id must be an integer", cause=e) from e


class SocketIOTransport:
    """Persistent channel over Socket.IO.

    Each socket carries exactly one sync session. The handshake ``auth``
    payload is ``{"token": <JWT>, "session_id": <optional resume id>}``.

    Server to client events:
        ``session``: assigned session id, watermark and replay count
        ``sync_event``: one event dict
        ``resync_required``: full state to replace the client's copy
        ``sync_error``: why a handshake was refused

    Client to server events:
        ``heartbeat``, ``ack`` and ``ack_through`` (``{"event_id": n}``)
    """

    def __init__(self, config: WebSocketConfig, auth: Optional[TokenAuth] = None):
        """Initialize the transport.

        Args:
            config: Channel configuration
            auth: Token validator; built from ``config`` when omitted
        """
        self.config = config
        self.sio = socketio.AsyncServer(
            async_mode='aiohttp',
            cors_allowed_origins=config.cors_allowed_origins,
            always_connect=True,  # connect handler emits replayed events
            logger=False,
            engineio_logger=False
        )
        self.app = web.Application()
        self.sio.attach(self.app)

        self.auth = auth or TokenAuth(config.secret_key, algorithm=config.jwt_algorithm)
        self.core = None
        self._runner: Optional[web.AppRunner] = None

        self.sids: Dict[str, str] = {}  # session_id -> sid
        self.sessions: Dict[str, str] = {}  # sid -> session_id

        self._setup_handlers()

    def bind(self, core) -> None:
        """Attach the sync core whose operations the handlers call."""
        self.core = core

    def _setup_handlers(self):
        """Set up Socket.IO event handlers."""

        @self.sio.event
        async def connect(sid, environ, auth):
            return await self.handle_connect(sid, auth)

        @self.sio.event
        async def disconnect(sid):
            await self.handle_disconnect(sid)

        @self.sio.event
        async def heartbeat(sid, data=None):
            return await self._call(sid, "heartbeat", self.core.on_heartbeat)

        @self.sio.event
        async def ack(sid, data=None):
            return await self._call_with_event_id(sid, "ack", self.core.acknowledge, data)

        @self.sio.event
        async def ack_through(sid, data=None):
            return await self._call_with_event_id(
                sid, "ack_through", self.core.acknowledge_through, data
            )

    async def handle_connect(self, sid: str, auth: Optional[Dict[str, Any]]) -> bool:
        """Admit a socket: authenticate, reconcile, and go live.

        Returns False to have Socket.IO drop the socket.
        """
        try:
            if not auth or 'token' not in auth:
                raise AuthenticationError("No authentication token provided")
            claims = self.auth.validate_token(auth['token'])
        except AuthenticationError as e:
            logger.warning("connection_rejected", sid=sid, error=e.message)
            return False

        user_id = claims['user_id']
        session_id = auth.get('session_id') or uuid.uuid4().hex
        if session_id in self.sids:
            logger.warning("duplicate_session_rejected", sid=sid, session_id=session_id)
            await self.sio.emit('sync_error', {'code': 'DUPLICATE_SESSION'}, to=sid)
            return False

        self.sids[session_id] = sid
        self.sessions[sid] = session_id
        try:
            result = await self.core.on_connect(user_id, sid, session_id)
        except SyncError as e:
            self._unmap(sid)
            logger.warning("connection_failed", sid=sid, session_id=session_id, code=e.code)
            await self.sio.emit('sync_error', e.to_dict(), to=sid)
            return False

        await self.sio.emit('session', {
            'session_id': result.session_id,
            'watermark': result.watermark,
            'replayed': result.replayed,
            'fresh': result.fresh,
        }, to=sid)
        if result.resync_required:
            await self.sio.emit(
                'resync_required', await self.core.full_state(user_id), to=sid
            )

        logger.info("client_connected", sid=sid, user_id=user_id, session_id=session_id)
        return True

    async def handle_disconnect(self, sid: str) -> None:
        session_id = self._unmap(sid)
        if session_id is not None:
            await self.core.on_disconnect(session_id)
            logger.info("client_disconnected", sid=sid, session_id=session_id)

    async def send(self, session_id: str, event: Event) -> None:
        """Push one event to the socket bound to ``session_id``."""
        sid = self.sids.get(session_id)
        if sid is None:
            raise DeliveryFailure(
                f"No socket for session {session_id}", session_id=session_id
            )
        await self.sio.emit('sync_event', event.to_dict(), to=sid)

    async def disconnect(self, session_id: str) -> None:
        """Close the socket of a session the core has dropped."""
        sid = self.sids.get(session_id)
        if sid is None:
            return
        self._unmap(sid)
        await self.sio.disconnect(sid)

    def _unmap(self, sid: str) -> Optional[str]:
        session_id = self.sessions.pop(sid, None)
        if session_id is not None and self.sids.get(session_id) == sid:
            del self.sids[session_id]
        return session_id

    async def _call(self, sid: str, name: str, operation, *args) -> Dict[str, Any]:
        session_id = self.sessions.get(sid)
        if session_id is None:
            return {'success': False, 'error': 'Unknown socket'}
        try:
            result = await operation(session_id, *args)
        except SyncError as e:
            logger.info("client_request_failed", sid=sid, request=name, code=e.code)
            return {'success': False, 'error': e.to_dict()}
        return {'success': True, 'result': result}

    async def _call_with_event_id(self, sid: str, name: str, operation, data: Any) -> Dict[str, Any]:
        try:
            event_id = _event_id(data)
        except InvalidRequest as e:
            logger.info("client_request_invalid", sid=sid, request=name)
            return {'success': False, 'error': e.to_dict()}
        return await self._call(sid, name, operation, event_id)

    async def start(self, host: Optional[str] = None, port: Optional[int] = None):
        """Start serving the aiohttp application."""
        host = host or self.config.host
        port = port or self.config.port
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info("websocket_server_started", host=host, port=port)

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("websocket_server_stopped")

    def get_stats(self) -> Dict[str, Any]:
        return {
            'connected_sockets': len(self.sessions),
            'sessions': sorted(self.sids),
        }


async def create_server(config, host: Optional[str] = None, port: Optional[int] = None):
    """Build, start and return a sync core served over Socket.IO.

    Args:
        config: Full ``SyncConfig``
        host: Host to bind to, overriding ``config.websocket.host``
        port: Port to bind to, overriding ``config.websocket.port``

    Returns:
        Tuple of (core, transport)
    """
    transport = SocketIOTransport(config.websocket)
    core = SyncCore(config, transport)
    transport.bind(core)

    await core.initialize()
    await core.start()
    await transport.start(host, port)
    return core, transport


__all__ = [
    'SocketIOTransport',
    'create_server',
]
