"""
Fan-out of new events to a user's live sessions.

Delivery to one session is serialized behind that session's lock and driven
by its cursor (highest event id attempted). An event that arrives ahead of
the cursor first pulls the gap from the event log, so a session never sees
event N+1 before event N has been attempted on it.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from ..utils.errors import DeliveryFailure
from ..utils.locks import KeyedLocks
from ..utils.logging import get_logger
from .event_log import Event, EventLog
from .presence import LiveSession, PresenceTracker
from .transport import Transport


logger = get_logger("todo-sync.broadcaster")

DELIVERED = "delivered"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class PublishReport:
    """Per-session outcome of one publish."""
    user_id: str
    event_id: int
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class Broadcaster:
    """Pushes events to live sessions and records delivery."""

    def __init__(
        self,
        event_log: EventLog,
        presence: PresenceTracker,
        transport: Transport,
        on_drop: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        """
        Args:
            event_log: Source of gap events and delivery bookkeeping
            presence: Live-session membership
            transport: Outbound push primitive
            on_drop: Called with a session id after a failed session is
                deregistered, so the transport can close its connection
        """
        self.event_log = event_log
        self.presence = presence
        self.transport = transport
        self.on_drop = on_drop
        self._session_locks = KeyedLocks()

    async def publish(self, event: Event) -> PublishReport:
        """Deliver ``event`` to every session of its user that is live right now."""
        report = PublishReport(user_id=event.user_id, event_id=event.id)
        session_ids = sorted(self.presence.live_sessions_of(event.user_id))
        if not session_ids:
            logger.debug("publish_no_live_sessions", user_id=event.user_id, event_id=event.id)
            return report

        outcomes = await asyncio.gather(
            *(self._deliver_through(session_id, event) for session_id in session_ids)
        )
        for session_id, outcome in zip(session_ids, outcomes):
            getattr(report, outcome).append(session_id)

        logger.debug(
            "event_published",
            user_id=event.user_id,
            event_id=event.id,
            delivered=len(report.delivered),
            failed=len(report.failed)
        )
        return report

    async def catch_up(self, session_id: str) -> str:
        """Deliver everything after the session's cursor up to the current head."""
        return await self._deliver_through(session_id, None)

    async def _deliver_through(self, session_id: str, event: Optional[Event]) -> str:
        async with self._session_locks.hold(session_id):
            live = self.presence.live_session(session_id)
            if live is None:
                return SKIPPED

            target = event.id if event is not None else await self.event_log.head(live.user_id)
            if target <= live.cursor:
                return SKIPPED

            try:
                if event is not None and event.id == live.cursor + 1:
                    await self._send(live, event)
                else:
                    await self._replay_gap(live, target)
            except DeliveryFailure as e:
                await self._drop(live, e)
                return FAILED

            return DELIVERED

    async def _replay_gap(self, live: LiveSession, target: int) -> None:
        horizon = await self.event_log.expired_through(live.user_id)
        if live.cursor < horizon:
            raise DeliveryFailure(
                f"Events after {live.cursor} expired before delivery",
                session_id=live.session_id
            )
        stream = self.event_log.events_since(
            live.user_id, live.cursor, limit=target - live.cursor
        )
        async for pending in stream:
            if pending.id > target:
                break
            await self._send(live, pending)

    async def _send(self, live: LiveSession, event: Event) -> None:
        try:
            await self.transport.send(live.session_id, event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise DeliveryFailure(
                f"Failed to deliver event {event.id} to {live.session_id}: {e}",
                cause=e,
                session_id=live.session_id,
                event_id=event.id
            ) from e
        finally:
            live.cursor = max(live.cursor, event.id)
        await self.event_log.mark_delivered(event.id, live.session_id)

    async def _drop(self, live: LiveSession, error: DeliveryFailure) -> None:
        logger.info(
            "delivery_failed",
            session_id=live.session_id,
            user_id=live.user_id,
            error=error.message
        )
        if self.presence.live_session(live.session_id) is live:
            await self.presence.deregister(live.session_id)
        if self.on_drop is not None:
            try:
                await self.on_drop(live.session_id)
            except Exception as e:
                logger.warning("drop_callback_failed", session_id=live.session_id, error=str(e))


__all__ = [
    'Broadcaster',
    'PublishReport',
]
