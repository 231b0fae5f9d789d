"""
Item lifecycle state machine.

An item carries a single status plus the timestamp at which it last entered
each status. Transitions follow a fixed table::

    created -> active -> completed
                 |           |
                 +-> archived <+
                        |
                        v
                     deleted

``deleted`` is terminal and no status transitions to itself.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from ..utils.errors import InvalidTransition, StaleRequest, VersionConflict


class ItemStatus(Enum):
    """Lifecycle states of a todo item."""
    CREATED = "created"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    DELETED = "deleted"


TRANSITIONS: Mapping[ItemStatus, FrozenSet[ItemStatus]] = {
    ItemStatus.CREATED: frozenset({ItemStatus.ACTIVE}),
    ItemStatus.ACTIVE: frozenset({ItemStatus.COMPLETED, ItemStatus.ARCHIVED}),
    ItemStatus.COMPLETED: frozenset({ItemStatus.ARCHIVED}),
    ItemStatus.ARCHIVED: frozenset({ItemStatus.DELETED}),
    ItemStatus.DELETED: frozenset(),
}

INITIAL_STATUS = ItemStatus.CREATED


def utc(ts: datetime) -> datetime:
    """Normalize a timestamp to timezone-aware UTC; naive values are taken as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def allowed_targets(status: ItemStatus) -> FrozenSet[ItemStatus]:
    return TRANSITIONS[status]


def can_transition(from_status: ItemStatus, to_status: ItemStatus) -> bool:
    return to_status in TRANSITIONS[from_status]


def is_terminal(status: ItemStatus) -> bool:
    return not TRANSITIONS[status]


@dataclass(frozen=True)
class Item:
    """A todo item as seen by the sync core."""
    id: str
    owner_id: str
    status: ItemStatus = INITIAL_STATUS
    version: int = 0
    status_timestamps: Mapping[ItemStatus, datetime] = field(default_factory=dict)
    title: str = ""

    @classmethod
    def new(
        cls,
        item_id: str,
        owner_id: str,
        created_at: Optional[datetime] = None,
        title: str = "",
    ) -> "Item":
        created_at = utc(created_at or datetime.now(timezone.utc))
        return cls(
            id=item_id,
            owner_id=owner_id,
            status=INITIAL_STATUS,
            version=0,
            status_timestamps={INITIAL_STATUS: created_at},
            title=title,
        )

    @property
    def entered_at(self) -> Optional[datetime]:
        """Timestamp at which the item entered its current status."""
        return self.status_timestamps.get(self.status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "status": self.status.value,
            "version": self.version,
            "status_timestamps": {
                status.value: ts.isoformat()
                for status, ts in self.status_timestamps.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Item":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            title=data.get("title", ""),
            status=ItemStatus(data["status"]),
            version=int(data["version"]),
            status_timestamps={
                ItemStatus(status): utc(datetime.fromisoformat(ts))
                for status, ts in data["status_timestamps"].items()
            },
        )


@dataclass(frozen=True)
class LifecycleChange:
    """Description of one accepted transition, appended to the event log."""
    item_id: str
    owner_id: str
    from_status: ItemStatus
    to_status: ItemStatus
    version: int
    requested_at: datetime

    def to_payload(self, item: Item) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "version": self.version,
            "requested_at": self.requested_at.isoformat(),
            "item": item.to_dict(),
        }


@dataclass(frozen=True)
class TransitionResult:
    item: Item
    change: LifecycleChange


def transition(
    item: Item,
    target_status: ItemStatus,
    requested_at: datetime,
    expected_version: Optional[int] = None,
) -> TransitionResult:
    """
    Validate and apply one status transition.

    Checks run in order: version guard, edge legality, clock ordering.

    Args:
        item: Current item state
        target_status: Status to move to
        requested_at: Client timestamp of the request
        expected_version: Version the caller last saw, if it supplied one

    Returns:
        The new item and the change to record

    Raises:
        VersionConflict: ``expected_version`` differs from ``item.version``
        InvalidTransition: ``target_status`` is not one hop from ``item.status``
        StaleRequest: ``requested_at`` predates entry into ``item.status``
    """
    try:
        target_status = ItemStatus(target_status)
    except ValueError:
        raise InvalidTransition(item.status.value, str(target_status))
    requested_at = utc(requested_at)

    if expected_version is not None and expected_version != item.version:
        raise VersionConflict(expected_version, item.version)

    if not can_transition(item.status, target_status):
        raise InvalidTransition(item.status.value, target_status.value)

    entered_at = item.entered_at
    if entered_at is not None and requested_at < entered_at:
        raise StaleRequest(requested_at, entered_at)

    timestamps = dict(item.status_timestamps)
    timestamps[target_status] = requested_at
    new_item = replace(
        item,
        status=target_status,
        version=item.version + 1,
        status_timestamps=timestamps,
    )

    change = LifecycleChange(
        item_id=item.id,
        owner_id=item.owner_id,
        from_status=item.status,
        to_status=target_status,
        version=new_item.version,
        requested_at=requested_at,
    )
    return TransitionResult(item=new_item, change=change)


__all__ = [
    'ItemStatus',
    'TRANSITIONS',
    'INITIAL_STATUS',
    'Item',
    'LifecycleChange',
    'TransitionResult',
    'transition',
    'allowed_targets',
    'can_transition',
    'is_terminal',
    'utc',
]
