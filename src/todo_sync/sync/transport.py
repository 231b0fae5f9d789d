"""Outbound push primitive implemented by the persistent-channel layer."""

from typing import Protocol, runtime_checkable

from .event_log import Event


@runtime_checkable
class Transport(Protocol):
    """Pushes one event to one session's connection.

    Implementations raise on any failure to hand the event to the
    connection; the core treats that as the session not being live.
    """

    async def send(self, session_id: str, event: Event) -> None:
        ...
