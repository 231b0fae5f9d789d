"""Replay of missed events to a (re)connecting session."""

import asyncio
from dataclasses import dataclass

from ..utils.errors import DeliveryFailure, ResyncRequired, SessionNotFound
from ..utils.logging import get_logger
from .event_log import EventLog
from .presence import PresenceTracker
from .transport import Transport


logger = get_logger("todo-sync.reconciler")


@dataclass(frozen=True)
class ReconcileResult:
    session_id: str
    user_id: str
    replayed: int
    watermark: int


class Reconciler:
    """Brings a session from its persisted watermark up to the log head."""

    def __init__(
        self,
        event_log: EventLog,
        presence: PresenceTracker,
        transport: Transport,
        max_backlog: int = 1000,
    ):
        self.event_log = event_log
        self.presence = presence
        self.transport = transport
        self.max_backlog = max_backlog

    async def reconcile(self, session_id: str) -> ReconcileResult:
        """
        Replay every event after the session's watermark, in order.

        The watermark only moves once the whole backlog has been handed to
        the transport; an interrupted replay leaves it untouched.

        Raises:
            SessionNotFound: no durable record for ``session_id``
            ResyncRequired: events after the watermark expired, or the
                backlog is larger than ``max_backlog``
            DeliveryFailure: the connection failed mid-replay
        """
        record = await self.presence.get_session(session_id)
        if record is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
        user_id = record.user_id
        watermark = record.last_seen_event_id

        horizon = await self.event_log.expired_through(user_id)
        if watermark < horizon:
            logger.info(
                "resync_required",
                session_id=session_id,
                reason="expired",
                watermark=watermark,
                horizon=horizon
            )
            raise ResyncRequired(
                f"Events after {watermark} have expired",
                session_id=session_id,
                reason="expired"
            )

        backlog = await self.event_log.count_since(user_id, watermark)
        if backlog > self.max_backlog:
            logger.info(
                "resync_required",
                session_id=session_id,
                reason="backlog",
                backlog=backlog
            )
            raise ResyncRequired(
                f"Backlog of {backlog} events exceeds {self.max_backlog}",
                session_id=session_id,
                reason="backlog"
            )

        highest = watermark
        replayed = 0
        async for event in self.event_log.events_since(user_id, watermark):
            try:
                await self.transport.send(session_id, event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.info(
                    "reconcile_interrupted",
                    session_id=session_id,
                    event_id=event.id,
                    error=str(e)
                )
                raise DeliveryFailure(
                    f"Replay to {session_id} failed at event {event.id}: {e}",
                    cause=e,
                    session_id=session_id,
                    event_id=event.id
                ) from e
            await self.event_log.mark_delivered(event.id, session_id)
            highest = event.id
            replayed += 1

        if highest > watermark:
            watermark = await self.presence.advance_watermark(session_id, highest)

        logger.info(
            "session_reconciled",
            session_id=session_id,
            user_id=user_id,
            replayed=replayed,
            watermark=watermark
        )
        return ReconcileResult(
            session_id=session_id,
            user_id=user_id,
            replayed=replayed,
            watermark=watermark,
        )


__all__ = [
    'Reconciler',
    'ReconcileResult',
]
