"""
Per-user append-only event log.

This module provides:
- Gapless, strictly increasing event ids per user
- Per-session delivery bookkeeping (pending / delivered / acknowledged)
- Lazy, restartable replay of events after a watermark
- Retention expiry with a per-user resync horizon
"""

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

import aiosqlite

from ..storage.database import Database
from ..utils.locks import KeyedLocks
from ..utils.logging import get_logger


logger = get_logger("todo-sync.event_log")


class EventKind(Enum):
    """Kinds of events carried by the log."""
    LIFECYCLE_CHANGE = "lifecycle_change"
    NOTIFICATION = "notification"


class DeliveryStatus(Enum):
    """Per-session delivery state of an event."""
    PENDING = "pending"
    DELIVERED = "delivered"
    ACKNOWLEDGED = "acknowledged"


def _timestamp(ts: Optional[datetime] = None) -> str:
    ts = ts or datetime.now(timezone.utc)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class Event:
    """An immutable entry of a user's event log."""
    id: int
    user_id: str
    kind: EventKind
    payload: Mapping[str, Any]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "kind": self.kind.value,
            "payload": dict(self.payload),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "Event":
        return cls(
            id=row["event_id"],
            user_id=row["user_id"],
            kind=EventKind(row["kind"]),
            payload=json.loads(row["payload"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )


@dataclass
class ExpiryReport:
    """Outcome of one retention pass."""
    users_scanned: int = 0
    events_dropped: int = 0
    forced_users: List[str] = field(default_factory=list)


class EventStream:
    """
    Lazy view of a user's events after a watermark.

    Each ``async for`` starts over from the watermark and stops at the head
    observed when iteration began, so the stream is finite and restartable.
    """

    def __init__(
        self,
        log: "EventLog",
        user_id: str,
        watermark: int,
        limit: Optional[int] = None,
    ):
        self.log = log
        self.user_id = user_id
        self.watermark = watermark
        self.limit = limit

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        upper = await self.log.head(self.user_id)
        cursor = self.watermark
        remaining = self.limit

        while cursor < upper:
            page_size = self.log.page_size
            if remaining is not None:
                if remaining <= 0:
                    return
                page_size = min(page_size, remaining)

            rows = await self.log.db.fetchall(
                """
                SELECT * FROM events
                WHERE user_id = ? AND event_id > ? AND event_id <= ?
                ORDER BY event_id
                LIMIT ?
                """,
                (self.user_id, cursor, upper, page_size)
            )
            if not rows:
                return

            for row in rows:
                event = Event.from_row(row)
                cursor = event.id
                yield event

            if remaining is not None:
                remaining -= len(rows)
            if len(rows) < page_size:
                return

    async def to_list(self) -> List[Event]:
        return [event async for event in self]


class EventWriter:
    """Appends events for one user inside an open transaction."""

    def __init__(self, conn: aiosqlite.Connection, user_id: str):
        self.conn = conn
        self.user_id = user_id
        self.appended: List[Event] = []

    async def append(
        self,
        kind: EventKind,
        payload: Mapping[str, Any],
        created_at: Optional[datetime] = None,
    ) -> Event:
        kind = EventKind(kind)
        async with self.conn.execute(
            "SELECT last_event_id FROM event_log_state WHERE user_id = ?",
            (self.user_id,)
        ) as cursor:
            row = await cursor.fetchone()
        event_id = (row["last_event_id"] if row else 0) + 1
        created = _timestamp(created_at)

        await self.conn.execute(
            """
            INSERT INTO events (user_id, event_id, kind, payload, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                self.user_id,
                event_id,
                kind.value,
                json.dumps(dict(payload), sort_keys=True, default=str),
                created,
            )
        )
        await self.conn.execute(
            """
            INSERT INTO event_log_state (user_id, last_event_id, expired_through)
            VALUES (?, ?, 0)
            ON CONFLICT(user_id) DO UPDATE SET last_event_id = excluded.last_event_id
            """,
            (self.user_id, event_id)
        )

        event = Event(
            id=event_id,
            user_id=self.user_id,
            kind=kind,
            payload=json.loads(json.dumps(dict(payload), default=str)),
            created_at=datetime.fromisoformat(created),
        )
        self.appended.append(event)
        return event


class EventLog:
    """Durable, ordered, per-user event storage."""

    def __init__(self, db: Database, page_size: int = 200):
        self.db = db
        self.page_size = page_size
        self._user_locks = KeyedLocks()

    @asynccontextmanager
    async def writer(self, user_id: str) -> AsyncIterator[EventWriter]:
        """
        Hold the user's append lock and one storage transaction.

        Other writes made through ``writer.conn`` commit atomically with the
        appended events.
        """
        async with self._user_locks.hold(user_id):
            async with self.db.transaction() as conn:
                writer = EventWriter(conn, user_id)
                yield writer
        for event in writer.appended:
            logger.debug(
                "event_appended",
                user_id=user_id,
                event_id=event.id,
                kind=event.kind.value
            )

    async def append(
        self,
        user_id: str,
        kind: EventKind,
        payload: Mapping[str, Any],
        created_at: Optional[datetime] = None,
    ) -> Event:
        """Append one event and return it with its assigned id."""
        async with self.writer(user_id) as writer:
            return await writer.append(kind, payload, created_at)

    async def get(self, user_id: str, event_id: int) -> Optional[Event]:
        row = await self.db.fetchone(
            "SELECT * FROM events WHERE user_id = ? AND event_id = ?",
            (user_id, event_id)
        )
        return Event.from_row(row) if row else None

    async def head(self, user_id: str) -> int:
        """Last id assigned for the user, 0 if none."""
        row = await self.db.fetchone(
            "SELECT last_event_id FROM event_log_state WHERE user_id = ?",
            (user_id,)
        )
        return row["last_event_id"] if row else 0

    async def expired_through(self, user_id: str) -> int:
        """Highest id force-expired while still unacknowledged, 0 if none."""
        row = await self.db.fetchone(
            "SELECT expired_through FROM event_log_state WHERE user_id = ?",
            (user_id,)
        )
        return row["expired_through"] if row else 0

    def events_since(
        self,
        user_id: str,
        watermark: int,
        limit: Optional[int] = None,
    ) -> EventStream:
        """All retained events with id > watermark, ascending."""
        return EventStream(self, user_id, watermark, limit)

    async def count_since(self, user_id: str, watermark: int) -> int:
        row = await self.db.fetchone(
            "SELECT COUNT(*) AS n FROM events WHERE user_id = ? AND event_id > ?",
            (user_id, watermark)
        )
        return row["n"]

    async def mark_delivered(self, event_id: int, session_id: str) -> None:
        """Record delivery; no-op if already delivered or acknowledged."""
        await self.db.execute(
            """
            INSERT INTO event_deliveries (session_id, event_id, status, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(session_id, event_id) DO NOTHING
            """,
            (session_id, event_id, DeliveryStatus.DELIVERED.value, _timestamp())
        )

    async def mark_acknowledged(self, event_id: int, session_id: str) -> None:
        """Record acknowledgment; no-op if already acknowledged."""
        await self.db.execute(
            """
            INSERT INTO event_deliveries (session_id, event_id, status, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(session_id, event_id) DO UPDATE
            SET status = excluded.status, updated_at = excluded.updated_at
            WHERE event_deliveries.status != excluded.status
            """,
            (session_id, event_id, DeliveryStatus.ACKNOWLEDGED.value, _timestamp())
        )

    async def acknowledge_through(self, session_id: str, user_id: str, event_id: int) -> int:
        """Acknowledge every retained event of the user up to ``event_id``."""
        now = _timestamp()
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO event_deliveries (session_id, event_id, status, updated_at)
                SELECT ?, event_id, ?, ? FROM events
                WHERE user_id = ? AND event_id <= ?
                ON CONFLICT(session_id, event_id) DO UPDATE
                SET status = excluded.status, updated_at = excluded.updated_at
                WHERE event_deliveries.status != excluded.status
                """,
                (session_id, DeliveryStatus.ACKNOWLEDGED.value, now, user_id, event_id)
            )
            changed = cursor.rowcount
        logger.debug(
            "events_acknowledged_through",
            session_id=session_id,
            event_id=event_id,
            changed=changed
        )
        return changed

    async def delivery_status(self, event_id: int, session_id: str) -> DeliveryStatus:
        row = await self.db.fetchone(
            "SELECT status FROM event_deliveries WHERE session_id = ? AND event_id = ?",
            (session_id, event_id)
        )
        return DeliveryStatus(row["status"]) if row else DeliveryStatus.PENDING

    async def acknowledged_prefix(self, user_id: str, session_id: str, after: int) -> int:
        """
        Highest id n such that every event in (after, n] is acknowledged.

        Returns ``after`` when the next event is not acknowledged.
        """
        rows = await self.db.fetchall(
            """
            SELECT e.event_id, d.status
            FROM events e
            LEFT JOIN event_deliveries d
              ON d.session_id = ? AND d.event_id = e.event_id
            WHERE e.user_id = ? AND e.event_id > ?
            ORDER BY e.event_id
            """,
            (session_id, user_id, after)
        )
        prefix = after
        for row in rows:
            if row["event_id"] != prefix + 1:
                break
            if row["status"] != DeliveryStatus.ACKNOWLEDGED.value:
                break
            prefix = row["event_id"]
        return prefix

    async def expire(
        self,
        retention_ceiling: datetime,
        max_events_per_user: Optional[int] = None,
    ) -> ExpiryReport:
        """
        Drop events created before ``retention_ceiling``.

        When ``max_events_per_user`` is set, the oldest events beyond that
        count are dropped as well. If any registered session of the user has
        not consumed a dropped event, the user's resync horizon is raised so
        those sessions get a full resync instead of an incomplete replay.
        """
        report = ExpiryReport()
        ceiling = _timestamp(retention_ceiling)

        async with self.db.transaction() as conn:
            async with conn.execute(
                "SELECT user_id, last_event_id, expired_through FROM event_log_state"
            ) as cursor:
                states = list(await cursor.fetchall())

            for state in states:
                user_id = state["user_id"]
                report.users_scanned += 1

                async with conn.execute(
                    """
                    SELECT MAX(event_id) AS cutoff, COUNT(*) AS n FROM events
                    WHERE user_id = ? AND created_at < ?
                    """,
                    (user_id, ceiling)
                ) as cursor:
                    aged = await cursor.fetchone()
                cutoff = aged["cutoff"] or 0

                if max_events_per_user is not None:
                    cutoff = max(cutoff, state["last_event_id"] - max_events_per_user)

                async with conn.execute(
                    "SELECT COUNT(*) AS n FROM events WHERE user_id = ? AND event_id <= ?",
                    (user_id, cutoff)
                ) as cursor:
                    dropped = (await cursor.fetchone())["n"]
                if dropped == 0:
                    continue

                consumed = await self._consumed_by_all(conn, user_id, cutoff, dropped)
                if not consumed and cutoff > state["expired_through"]:
                    await conn.execute(
                        "UPDATE event_log_state SET expired_through = ? WHERE user_id = ?",
                        (cutoff, user_id)
                    )
                    report.forced_users.append(user_id)

                await conn.execute(
                    """
                    DELETE FROM event_deliveries
                    WHERE event_id <= ?
                      AND session_id IN (SELECT session_id FROM sessions WHERE user_id = ?)
                    """,
                    (cutoff, user_id)
                )
                await conn.execute(
                    "DELETE FROM events WHERE user_id = ? AND event_id <= ?",
                    (user_id, cutoff)
                )
                report.events_dropped += dropped

        logger.info(
            "event_log_expired",
            users_scanned=report.users_scanned,
            events_dropped=report.events_dropped,
            forced_users=len(report.forced_users)
        )
        return report

    async def _consumed_by_all(
        self,
        conn: aiosqlite.Connection,
        user_id: str,
        cutoff: int,
        dropped: int,
    ) -> bool:
        """True if every registered session has seen or acknowledged ids <= cutoff."""
        async with conn.execute(
            "SELECT session_id, last_seen_event_id FROM sessions WHERE user_id = ?",
            (user_id,)
        ) as cursor:
            sessions = list(await cursor.fetchall())

        for session in sessions:
            if session["last_seen_event_id"] >= cutoff:
                continue
            async with conn.execute(
                """
                SELECT COUNT(*) AS n FROM event_deliveries d
                JOIN events e ON e.user_id = ? AND e.event_id = d.event_id
                WHERE d.session_id = ? AND d.status = ? AND d.event_id <= ?
                """,
                (user_id, session["session_id"], DeliveryStatus.ACKNOWLEDGED.value, cutoff)
            ) as cursor:
                acked = (await cursor.fetchone())["n"]
            if acked < dropped:
                return False
        return True


__all__ = [
    'Event',
    'EventKind',
    'DeliveryStatus',
    'EventLog',
    'EventStream',
    'EventWriter',
    'ExpiryReport',
]
