"""
Sync core manager.

Wires the lifecycle state machine, item store, event log, presence tracker,
broadcaster and reconciler together behind the operations the CRUD layer and
the persistent-channel transport call:

- submit_transition / create_item / notify for mutations
- on_connect / on_disconnect / on_heartbeat for the channel
- acknowledge / acknowledge_through for client receipts
- full_state for clients told to resync
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from ..lifecycle.state_machine import Item, ItemStatus, transition
from ..lifecycle.store import ItemStore
from ..storage.database import Database
from ..sync.broadcaster import Broadcaster
from ..sync.event_log import Event, EventKind, EventLog, ExpiryReport
from ..sync.notifications import build_notification, state_change_notification
from ..sync.presence import PresenceTracker
from ..sync.reconciler import Reconciler
from ..sync.transport import Transport
from ..utils.config import SyncConfig
from ..utils.errors import (
    EventNotFound,
    ItemNotFound,
    ResyncRequired,
    SessionNotFound,
    SyncError,
    VersionConflict,
    error_context,
)
from ..utils.locks import KeyedLocks
from .base import BaseManager


@dataclass(frozen=True)
class ConnectResult:
    """Outcome of a channel handshake."""
    session_id: str
    user_id: str
    replayed: int
    watermark: int
    fresh: bool = False
    resync_required: bool = False


@dataclass(eq=False)
class _Submission:
    """A transition request waiting on its item."""
    user_id: str
    target_status: ItemStatus
    expected_version: Optional[int]
    requested_at: datetime
    item: Optional[Item] = None
    error: Optional[Exception] = None

    @property
    def decided(self) -> bool:
        return self.item is not None or self.error is not None


class SyncCore(BaseManager):
    """Real-time synchronization core for one server process."""

    def __init__(
        self,
        config: SyncConfig,
        transport: Transport,
        db: Optional[Database] = None,
    ):
        """
        Initialize the sync core.

        Args:
            config: Loaded configuration
            transport: Outbound push primitive of the channel layer
            db: Database to use instead of the configured path
        """
        super().__init__("sync")
        self.config = config
        self.transport = transport
        self.db = db or Database(
            config.database.path,
            timeout=config.database.timeout,
            journal_mode=config.database.journal_mode,
            synchronous=config.database.synchronous,
        )

        self.items = ItemStore(self.db)
        self.event_log = EventLog(self.db, page_size=config.event_log.page_size)
        self.presence = PresenceTracker(
            self.db,
            heartbeat_timeout=config.presence.heartbeat_timeout
        )
        self.broadcaster = Broadcaster(
            self.event_log,
            self.presence,
            transport,
            on_drop=getattr(transport, "disconnect", None),
        )
        self.reconciler = Reconciler(
            self.event_log,
            self.presence,
            transport,
            max_backlog=config.reconcile.max_backlog,
        )
        self._item_locks = KeyedLocks()
        self._pending: Dict[str, List[_Submission]] = {}

    # Lifecycle

    async def _initialize(self) -> None:
        await self.db.initialize()

    async def _start(self) -> None:
        self._spawn_periodic(
            "evict_stale_sessions",
            self.config.presence.sweep_interval,
            self.evict_stale_sessions,
        )
        self._spawn_periodic(
            "expire_events",
            self.config.event_log.expiry_interval,
            self.expire_now,
        )
        self._spawn_periodic(
            "cleanup_stale_sessions",
            self.config.presence.cleanup_interval,
            self.cleanup_stale_sessions,
        )

    async def _stop(self) -> None:
        for session_id in [
            live["session_id"] for live in self.presence.stats()["sessions"]
        ]:
            await self.presence.deregister(session_id)
        await self.db.close()

    async def _health_check(self) -> Dict[str, Any]:
        stats = self.presence.stats()
        return {
            "online_users": stats["online_users"],
            "live_sessions": stats["live_sessions"],
            "database": str(self.db.db_path),
        }

    # CRUD-facing operations

    async def create_item(
        self,
        user_id: str,
        title: str = "",
        created_at: Optional[datetime] = None,
        item_id: Optional[str] = None,
    ) -> Item:
        """Create an item in status ``created`` and announce it to the user's devices."""
        item = Item.new(item_id or uuid.uuid4().hex, user_id, created_at, title)

        with error_context("sync", "create_item", user_id=user_id):
            async with self.event_log.writer(user_id) as writer:
                await self.items.insert(writer.conn, item)
                await writer.append(
                    EventKind.LIFECYCLE_CHANGE,
                    {
                        "item_id": item.id,
                        "from_status": None,
                        "to_status": item.status.value,
                        "version": item.version,
                        "requested_at": item.entered_at.isoformat(),
                        "item": item.to_dict(),
                    },
                )

        await self._publish_all(writer.appended)
        return item

    async def get_item(self, user_id: str, item_id: str) -> Item:
        return await self.items.get_owned(user_id, item_id)

    async def list_items(self, user_id: str) -> List[Item]:
        return await self.items.list_for(user_id)

    async def submit_transition(
        self,
        user_id: str,
        item_id: str,
        target_status: ItemStatus,
        expected_version: Optional[int],
        requested_at: datetime,
    ) -> Item:
        """
        Apply a status change requested by one of the user's devices.

        Submissions for one item that are waiting together are settled as a
        group against the persisted item: among those legal from its current
        status, the one with the latest ``requested_at`` is committed and the
        others receive VersionConflict. Semantic errors propagate to the
        caller unchanged.

        Raises:
            ItemNotFound, InvalidTransition, StaleRequest, VersionConflict
        """
        submission = _Submission(user_id, target_status, expected_version, requested_at)
        self._pending.setdefault(item_id, []).append(submission)

        appended: List[Event] = []
        try:
            async with self._item_locks.hold(item_id):
                if not submission.decided:
                    appended = await self._settle_transitions(item_id, submission)
        finally:
            self._withdraw(item_id, submission)

        await self._publish_all(appended)

        if submission.error is not None:
            if isinstance(submission.error, SyncError):
                self.logger.info(
                    "transition_rejected",
                    user_id=user_id,
                    item_id=item_id,
                    target_status=str(getattr(target_status, "value", target_status)),
                    code=submission.error.code,
                )
            raise submission.error
        return submission.item

    async def _settle_transitions(self, item_id: str, own: _Submission) -> List[Event]:
        """Decide every queued submission for ``item_id`` and commit the winner."""
        item = await self.items.get(item_id)
        group = self._pending.pop(item_id, [])
        if own not in group:
            group.append(own)

        try:
            return await self._settle_group(item_id, item, group)
        finally:
            # cancelled mid-commit: leave the rest for the next lock holder
            leftover = [submission for submission in group if not submission.decided]
            if leftover:
                self._pending.setdefault(item_id, []).extend(leftover)

    async def _settle_group(
        self,
        item_id: str,
        item: Optional[Item],
        group: List[_Submission],
    ) -> List[Event]:
        candidates = []
        for submission in group:
            if item is None or item.owner_id != submission.user_id:
                submission.error = ItemNotFound(f"Item {item_id} not found", item_id=item_id)
                continue
            try:
                result = transition(
                    item,
                    submission.target_status,
                    submission.requested_at,
                    submission.expected_version,
                )
            except SyncError as e:
                submission.error = e
                continue
            candidates.append((submission, result))

        if not candidates:
            return []

        winner, result = max(candidates, key=lambda c: c[1].change.requested_at)

        try:
            async with self.event_log.writer(item.owner_id) as writer:
                await self.items.save_transition(writer.conn, result.item, item.version)
                await writer.append(
                    EventKind.LIFECYCLE_CHANGE,
                    result.change.to_payload(result.item),
                )
                if self.config.notifications.on_transition:
                    await writer.append(
                        EventKind.NOTIFICATION,
                        state_change_notification(
                            item.title,
                            item.id,
                            result.change.from_status.value,
                            result.change.to_status.value,
                        ),
                    )
        except Exception as e:
            for submission, _ in candidates:
                submission.error = e
            return []

        winner.item = result.item
        for submission, _ in candidates:
            if submission is not winner:
                submission.error = VersionConflict(item.version, result.item.version)

        self.logger.info(
            "transition_applied",
            user_id=item.owner_id,
            item_id=item_id,
            from_status=result.change.from_status.value,
            to_status=result.change.to_status.value,
            version=result.item.version,
            contenders=len(candidates),
        )
        return list(writer.appended)

    def _withdraw(self, item_id: str, submission: _Submission) -> None:
        queued = self._pending.get(item_id)
        if queued is None:
            return
        if submission in queued:
            queued.remove(submission)
        if not queued:
            del self._pending[item_id]

    async def notify(
        self,
        user_id: str,
        notification_type: str,
        data: Optional[Mapping[str, Any]] = None,
    ) -> Event:
        """Append a notification event and push it to the user's live sessions."""
        payload = build_notification(notification_type, data)
        event = await self.event_log.append(user_id, EventKind.NOTIFICATION, payload)
        await self.broadcaster.publish(event)
        return event

    async def full_state(self, user_id: str) -> Dict[str, Any]:
        """Everything a client needs after ResyncRequired."""
        items = await self.items.list_for(user_id)
        return {
            "user_id": user_id,
            "head": await self.event_log.head(user_id),
            "items": [item.to_dict() for item in items],
        }

    # Channel-facing operations

    async def on_connect(
        self,
        user_id: str,
        connection: Any,
        session_id: Optional[str] = None,
    ) -> ConnectResult:
        """
        Admit a connection: reconcile its backlog, then make it live.

        A new session starts at the current head. A known session replays
        everything after its watermark before it receives ordinary publish
        traffic; if that is impossible the watermark is fast-forwarded and the
        result asks the client to refetch ``full_state``.

        Raises:
            DuplicateSession: ``session_id`` is live or owned by another user
            DeliveryFailure: the connection died during replay
        """
        session_id = session_id or uuid.uuid4().hex
        head = await self.event_log.head(user_id)
        record = await self.presence.ensure_session(user_id, session_id, watermark=head)
        fresh = record.connected_at is None

        resync = False
        try:
            result = await self.reconciler.reconcile(session_id)
            replayed, watermark = result.replayed, result.watermark
        except ResyncRequired:
            head = await self.event_log.head(user_id)
            watermark = await self.presence.advance_watermark(session_id, head)
            replayed, resync = 0, True

        await self.presence.register(user_id, session_id, connection, cursor=watermark)
        await self.broadcaster.catch_up(session_id)

        self.logger.info(
            "session_connected",
            user_id=user_id,
            session_id=session_id,
            fresh=fresh,
            replayed=replayed,
            resync_required=resync,
        )
        return ConnectResult(
            session_id=session_id,
            user_id=user_id,
            replayed=replayed,
            watermark=watermark,
            fresh=fresh,
            resync_required=resync,
        )

    async def on_disconnect(self, session_id: str) -> bool:
        return await self.presence.deregister(session_id)

    async def on_heartbeat(self, session_id: str, at: Optional[datetime] = None) -> bool:
        return self.presence.heartbeat(session_id, at)

    async def logout(self, session_id: str) -> bool:
        """Forget a session for good; its pending events no longer hold back expiry."""
        return await self.presence.forget(session_id)

    async def acknowledge(self, session_id: str, event_id: int) -> int:
        """
        Record that a session applied ``event_id``.

        Returns the session's watermark, advanced over the contiguous run of
        acknowledged events. Acks of expired events change nothing.

        Raises:
            SessionNotFound: unknown ``session_id``
            EventNotFound: ``event_id`` has not been assigned yet
        """
        record = await self.presence.get_session(session_id)
        if record is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)

        head = await self.event_log.head(record.user_id)
        if not 0 < event_id <= head:
            raise EventNotFound(
                f"Event {event_id} not found",
                session_id=session_id,
                event_id=event_id,
                head=head,
            )
        if await self.event_log.get(record.user_id, event_id) is None:
            self.logger.debug("ack_of_expired_event", session_id=session_id, event_id=event_id)
            return record.last_seen_event_id

        await self.event_log.mark_acknowledged(event_id, session_id)
        prefix = await self.event_log.acknowledged_prefix(
            record.user_id, session_id, record.last_seen_event_id
        )
        if prefix > record.last_seen_event_id:
            return await self.presence.advance_watermark(session_id, prefix)
        return record.last_seen_event_id

    async def acknowledge_through(self, session_id: str, event_id: int) -> int:
        """Acknowledge every event up to ``event_id`` and move the watermark there."""
        record = await self.presence.get_session(session_id)
        if record is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)

        head = await self.event_log.head(record.user_id)
        event_id = min(event_id, head)
        await self.event_log.acknowledge_through(session_id, record.user_id, event_id)
        return await self.presence.advance_watermark(session_id, event_id)

    # Maintenance

    async def evict_stale_sessions(self, now: Optional[datetime] = None) -> List[str]:
        evicted = await self.presence.evict_stale(now)
        disconnect = getattr(self.transport, "disconnect", None)
        if disconnect is not None:
            for session_id in evicted:
                await disconnect(session_id)
        return evicted

    async def cleanup_stale_sessions(self, now: Optional[datetime] = None) -> List[str]:
        return await self.presence.cleanup_stale_sessions(
            timedelta(seconds=self.config.presence.session_retention),
            now,
        )

    async def expire_now(self, now: Optional[datetime] = None) -> ExpiryReport:
        now = now or datetime.now(timezone.utc)
        ceiling = now - timedelta(days=self.config.event_log.retention_days)
        return await self.event_log.expire(
            ceiling,
            max_events_per_user=self.config.event_log.max_events_per_user,
        )

    async def _publish_all(self, events: List[Event]) -> None:
        for event in events:
            await self.broadcaster.publish(event)


__all__ = [
    'SyncCore',
    'ConnectResult',
]
