"""
Presence tracking for live sessions.

Live membership is kept in memory per user; each session's durable record
(owner, watermark, connection timestamps) lives in the sessions table and
outlives the connection so a reconnecting device can be reconciled.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, List, Optional

import aiosqlite

from ..storage.database import Database
from ..utils.errors import DuplicateSession, SessionNotFound
from ..utils.locks import KeyedLocks
from ..utils.logging import get_logger


logger = get_logger("todo-sync.presence")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class LiveSession:
    """In-memory state of a connected session."""
    session_id: str
    user_id: str
    connection: Any
    connected_at: datetime
    last_heartbeat: datetime
    cursor: int = 0  # highest event id attempted on this connection


@dataclass(frozen=True)
class SessionRecord:
    """Durable state of a session."""
    session_id: str
    user_id: str
    last_seen_event_id: int
    connected_at: Optional[datetime]
    last_heartbeat: Optional[datetime]
    disconnected_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "SessionRecord":
        return cls(
            session_id=row["session_id"],
            user_id=row["user_id"],
            last_seen_event_id=row["last_seen_event_id"],
            connected_at=_parse(row["connected_at"]),
            last_heartbeat=_parse(row["last_heartbeat"]),
            disconnected_at=_parse(row["disconnected_at"]),
        )


class PresenceTracker:
    """Authoritative live-session membership per user."""

    def __init__(self, db: Database, heartbeat_timeout: float = 60.0):
        self.db = db
        self.heartbeat_timeout = timedelta(seconds=heartbeat_timeout)
        self._live: Dict[str, Dict[str, LiveSession]] = {}
        self._owners: Dict[str, str] = {}
        self._user_locks = KeyedLocks()

    # Durable session store

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        row = await self.db.fetchone(
            "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
        )
        return SessionRecord.from_row(row) if row else None

    async def sessions_of(self, user_id: str) -> List[SessionRecord]:
        rows = await self.db.fetchall(
            "SELECT * FROM sessions WHERE user_id = ? ORDER BY session_id",
            (user_id,)
        )
        return [SessionRecord.from_row(row) for row in rows]

    async def ensure_session(
        self,
        user_id: str,
        session_id: str,
        watermark: int = 0,
    ) -> SessionRecord:
        """
        Create the durable record if missing and return it.

        Raises:
            DuplicateSession: the id is live, or persisted for another user
        """
        if session_id in self._owners:
            raise DuplicateSession(
                f"Session {session_id} is already connected",
                session_id=session_id
            )
        record = await self.get_session(session_id)
        if record is not None:
            if record.user_id != user_id:
                raise DuplicateSession(
                    f"Session {session_id} belongs to another user",
                    session_id=session_id
                )
            return record

        await self.db.execute(
            """
            INSERT INTO sessions (session_id, user_id, last_seen_event_id)
            VALUES (?, ?, ?)
            ON CONFLICT(session_id) DO NOTHING
            """,
            (session_id, user_id, watermark)
        )
        record = await self.get_session(session_id)
        if record is None or record.user_id != user_id:
            raise DuplicateSession(
                f"Session {session_id} belongs to another user",
                session_id=session_id
            )
        logger.info("session_created", session_id=session_id, user_id=user_id)
        return record

    async def watermark(self, session_id: str) -> int:
        record = await self.get_session(session_id)
        if record is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
        return record.last_seen_event_id

    async def advance_watermark(self, session_id: str, event_id: int) -> int:
        """Raise the watermark to ``event_id``; never lowers it. Returns the new value."""
        cursor = await self.db.execute(
            """
            UPDATE sessions
            SET last_seen_event_id = MAX(last_seen_event_id, ?)
            WHERE session_id = ?
            """,
            (event_id, session_id)
        )
        if cursor.rowcount == 0:
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
        return await self.watermark(session_id)

    async def forget(self, session_id: str) -> bool:
        """Drop a session entirely (logout): live entry, record and bookkeeping."""
        await self.deregister(session_id)
        async with self.db.transaction() as conn:
            await conn.execute(
                "DELETE FROM event_deliveries WHERE session_id = ?", (session_id,)
            )
            cursor = await conn.execute(
                "DELETE FROM sessions WHERE session_id = ?", (session_id,)
            )
            removed = cursor.rowcount > 0
        if removed:
            logger.info("session_forgotten", session_id=session_id)
        return removed

    # Live membership

    async def register(
        self,
        user_id: str,
        session_id: str,
        connection: Any,
        cursor: Optional[int] = None,
        at: Optional[datetime] = None,
    ) -> LiveSession:
        """
        Add a session to the user's live set.

        Args:
            user_id: Owning user
            session_id: Session identifier
            connection: Opaque transport handle
            cursor: Highest event id already pushed over this connection;
                defaults to the persisted watermark
            at: Connect time

        Raises:
            DuplicateSession: the id is already live or owned by another user
        """
        at = at or _now()
        async with self._user_locks.hold(user_id):
            record = await self.ensure_session(user_id, session_id)

            live = LiveSession(
                session_id=session_id,
                user_id=user_id,
                connection=connection,
                connected_at=at,
                last_heartbeat=at,
                cursor=record.last_seen_event_id if cursor is None else cursor,
            )
            self._live.setdefault(user_id, {})[session_id] = live
            self._owners[session_id] = user_id

            await self.db.execute(
                """
                UPDATE sessions
                SET connected_at = ?, last_heartbeat = ?, disconnected_at = NULL
                WHERE session_id = ?
                """,
                (at.isoformat(), at.isoformat(), session_id)
            )

        logger.info(
            "session_registered",
            session_id=session_id,
            user_id=user_id,
            live_sessions=len(self._live[user_id])
        )
        return live

    async def deregister(self, session_id: str) -> bool:
        """Remove a session from the live set; its record and watermark stay."""
        user_id = self._owners.pop(session_id, None)
        if user_id is None:
            return False

        sessions = self._live.get(user_id, {})
        live = sessions.pop(session_id, None)
        if not sessions:
            self._live.pop(user_id, None)

        await self.db.execute(
            """
            UPDATE sessions SET disconnected_at = ?, last_heartbeat = ?
            WHERE session_id = ?
            """,
            (
                _now().isoformat(),
                live.last_heartbeat.isoformat() if live else None,
                session_id,
            )
        )
        logger.info("session_deregistered", session_id=session_id, user_id=user_id)
        return True

    def live_sessions_of(self, user_id: str) -> FrozenSet[str]:
        """Point-in-time snapshot of the user's live session ids."""
        return frozenset(self._live.get(user_id, {}))

    def live_session(self, session_id: str) -> Optional[LiveSession]:
        user_id = self._owners.get(session_id)
        if user_id is None:
            return None
        return self._live.get(user_id, {}).get(session_id)

    def is_live(self, session_id: str) -> bool:
        return session_id in self._owners

    def heartbeat(self, session_id: str, at: Optional[datetime] = None) -> bool:
        """Record liveness. Returns False for sessions that are not live."""
        live = self.live_session(session_id)
        if live is None:
            logger.debug("heartbeat_for_unknown_session", session_id=session_id)
            return False
        at = at or _now()
        if at > live.last_heartbeat:
            live.last_heartbeat = at
        return True

    async def evict_stale(self, now: Optional[datetime] = None) -> List[str]:
        """Deregister sessions with no heartbeat within the timeout."""
        now = now or _now()
        stale = [
            live.session_id
            for sessions in self._live.values()
            for live in sessions.values()
            if now - live.last_heartbeat > self.heartbeat_timeout
        ]
        for session_id in stale:
            if await self.deregister(session_id):
                logger.warning("session_evicted", session_id=session_id, reason="heartbeat_timeout")
        return stale

    async def cleanup_stale_sessions(
        self,
        older_than: timedelta,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Forget disconnected sessions that have been gone longer than ``older_than``.

        Abandoned devices otherwise keep their delivery rows forever and
        hold back expiry of events they will never acknowledge.
        """
        cutoff = (now or _now()) - older_than
        rows = await self.db.fetchall(
            "SELECT * FROM sessions WHERE disconnected_at IS NOT NULL"
        )

        stale = []
        for row in rows:
            record = SessionRecord.from_row(row)
            last_active = max(
                ts for ts in (record.disconnected_at, record.last_heartbeat) if ts
            )
            if last_active < cutoff:
                stale.append(record.session_id)

        removed = []
        for session_id in stale:
            # may have reconnected while we were scanning
            if session_id in self._owners:
                continue
            if await self.forget(session_id):
                removed.append(session_id)

        if removed:
            logger.info("stale_sessions_cleaned", count=len(removed))
        return removed

    def is_online(self, user_id: str) -> bool:
        return bool(self._live.get(user_id))

    def online_users(self) -> List[str]:
        return sorted(self._live)

    def stats(self) -> Dict[str, Any]:
        return {
            "online_users": len(self._live),
            "live_sessions": len(self._owners),
            "sessions": [
                {
                    "session_id": live.session_id,
                    "user_id": live.user_id,
                    "connected_at": live.connected_at.isoformat(),
                    "last_heartbeat": live.last_heartbeat.isoformat(),
                    "cursor": live.cursor,
                }
                for sessions in self._live.values()
                for live in sessions.values()
            ],
        }


__all__ = [
    'PresenceTracker',
    'LiveSession',
    'SessionRecord',
]
