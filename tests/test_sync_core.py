"""
End-to-end tests for the sync core.
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone

from todo_sync.lifecycle.state_machine import ItemStatus
from todo_sync.managers.base import (
    ManagerAlreadyRunningError,
    ManagerNotReadyError,
    ManagerState,
)
from todo_sync.managers.sync import SyncCore
from todo_sync.sync.event_log import DeliveryStatus, EventKind
from todo_sync.utils.errors import (
    DuplicateSession,
    EventNotFound,
    InvalidTransition,
    ItemNotFound,
    SessionNotFound,
    StaleRequest,
    VersionConflict,
)
from tests.fixtures.sync_fixtures import T0, at


LIFECYCLE = [ItemStatus.ACTIVE, ItemStatus.COMPLETED, ItemStatus.ARCHIVED, ItemStatus.DELETED]


async def walk(core, user_id, item, statuses, start=1):
    for step, status in enumerate(statuses, start=start):
        item = await core.submit_transition(user_id, item.id, status, item.version, at(step * 10))
    return item


class TestItems:
    """Test item operations exposed to the CRUD layer."""

    @pytest.mark.asyncio
    async def test_create_item(self, core):
        item = await core.create_item("alice", title="Buy milk", created_at=T0)

        assert item.status == ItemStatus.CREATED
        assert item.version == 0
        assert await core.get_item("alice", item.id) == item
        assert await core.list_items("alice") == [item]
        assert await core.event_log.head("alice") == 1

    @pytest.mark.asyncio
    async def test_creation_event(self, core):
        item = await core.create_item("alice", created_at=T0, item_id="item-1")

        event = await core.event_log.get("alice", 1)

        assert event.kind == EventKind.LIFECYCLE_CHANGE
        assert event.payload["item_id"] == "item-1"
        assert event.payload["from_status"] is None
        assert event.payload["to_status"] == "created"
        assert event.payload["item"] == item.to_dict()

    @pytest.mark.asyncio
    async def test_items_of_other_users_are_hidden(self, core):
        item = await core.create_item("alice", created_at=T0)

        with pytest.raises(ItemNotFound):
            await core.get_item("bob", item.id)
        assert await core.list_items("bob") == []

    @pytest.mark.asyncio
    async def test_scenario_created_active_completed(self, core):
        item = await core.create_item("alice", created_at=T0)

        item = await core.submit_transition("alice", item.id, ItemStatus.ACTIVE, 0, at(60))
        item = await core.submit_transition("alice", item.id, ItemStatus.COMPLETED, 1, at(120))

        stored = await core.get_item("alice", item.id)
        assert stored.status == ItemStatus.COMPLETED
        assert stored.version == 2
        assert stored.status_timestamps == {
            ItemStatus.CREATED: T0,
            ItemStatus.ACTIVE: at(60),
            ItemStatus.COMPLETED: at(120),
        }
        assert await core.event_log.head("alice") == 3

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, core):
        item = await core.create_item("alice", created_at=T0)

        item = await walk(core, "alice", item, LIFECYCLE)

        assert item.status == ItemStatus.DELETED
        assert item.version == 4

    @pytest.mark.asyncio
    async def test_stale_version_leaves_item_unchanged(self, core):
        item = await core.create_item("alice", created_at=T0)
        await core.submit_transition("alice", item.id, ItemStatus.ACTIVE, 0, at(60))

        with pytest.raises(VersionConflict):
            await core.submit_transition("alice", item.id, ItemStatus.COMPLETED, 0, at(120))

        stored = await core.get_item("alice", item.id)
        assert stored.status == ItemStatus.ACTIVE
        assert stored.version == 1
        assert await core.event_log.head("alice") == 2

    @pytest.mark.asyncio
    async def test_stale_request(self, core):
        item = await core.create_item("alice", created_at=T0)
        await core.submit_transition("alice", item.id, ItemStatus.ACTIVE, 0, at(60))

        with pytest.raises(StaleRequest):
            await core.submit_transition("alice", item.id, ItemStatus.COMPLETED, 1, at(30))

    @pytest.mark.asyncio
    async def test_invalid_transition(self, core):
        item = await core.create_item("alice", created_at=T0)

        with pytest.raises(InvalidTransition):
            await core.submit_transition("alice", item.id, ItemStatus.COMPLETED, 0, at(60))
        assert await core.event_log.head("alice") == 1

    @pytest.mark.asyncio
    async def test_transition_of_foreign_item(self, core):
        item = await core.create_item("alice", created_at=T0)

        with pytest.raises(ItemNotFound):
            await core.submit_transition("bob", item.id, ItemStatus.ACTIVE, 0, at(60))

    @pytest.mark.asyncio
    async def test_concurrent_transitions_later_request_wins(self, core):
        item = await core.create_item("alice", created_at=T0)
        item = await core.submit_transition("alice", item.id, ItemStatus.ACTIVE, 0, at(10))

        archived, completed = await asyncio.gather(
            core.submit_transition("alice", item.id, ItemStatus.ARCHIVED, 1, at(20)),
            core.submit_transition("alice", item.id, ItemStatus.COMPLETED, 1, at(30)),
            return_exceptions=True,
        )

        assert isinstance(archived, VersionConflict)
        assert completed.status == ItemStatus.COMPLETED
        stored = await core.get_item("alice", item.id)
        assert stored.status == ItemStatus.COMPLETED
        assert stored.version == 2
        assert await core.event_log.head("alice") == 3

    @pytest.mark.asyncio
    async def test_concurrent_order_does_not_matter(self, core):
        item = await core.create_item("alice", created_at=T0)
        item = await core.submit_transition("alice", item.id, ItemStatus.ACTIVE, 0, at(10))

        completed, archived = await asyncio.gather(
            core.submit_transition("alice", item.id, ItemStatus.COMPLETED, 1, at(30)),
            core.submit_transition("alice", item.id, ItemStatus.ARCHIVED, 1, at(20)),
            return_exceptions=True,
        )

        assert completed.status == ItemStatus.COMPLETED
        assert isinstance(archived, VersionConflict)

    @pytest.mark.asyncio
    async def test_illegal_later_request_does_not_win(self, core):
        item = await core.create_item("alice", created_at=T0)
        item = await core.submit_transition("alice", item.id, ItemStatus.ACTIVE, 0, at(10))

        completed, deleted = await asyncio.gather(
            core.submit_transition("alice", item.id, ItemStatus.COMPLETED, 1, at(20)),
            core.submit_transition("alice", item.id, ItemStatus.DELETED, 1, at(30)),
            return_exceptions=True,
        )

        assert completed.status == ItemStatus.COMPLETED
        assert isinstance(deleted, InvalidTransition)

    @pytest.mark.asyncio
    async def test_loser_retry_after_refetch(self, core):
        item = await core.create_item("alice", created_at=T0)
        item = await core.submit_transition("alice", item.id, ItemStatus.ACTIVE, 0, at(10))
        await asyncio.gather(
            core.submit_transition("alice", item.id, ItemStatus.ARCHIVED, 1, at(20)),
            core.submit_transition("alice", item.id, ItemStatus.COMPLETED, 1, at(30)),
            return_exceptions=True,
        )

        current = await core.get_item("alice", item.id)
        item = await core.submit_transition("alice", item.id, ItemStatus.ARCHIVED, current.version, at(40))

        assert item.status == ItemStatus.ARCHIVED
        assert item.version == 3

    @pytest.mark.asyncio
    async def test_sequential_loser_with_later_timestamp_wins(self, core):
        item = await core.create_item("alice", created_at=T0)
        item = await core.submit_transition("alice", item.id, ItemStatus.ACTIVE, 0, at(10))
        await core.submit_transition("alice", item.id, ItemStatus.COMPLETED, 1, at(20))

        item = await core.submit_transition("alice", item.id, ItemStatus.ARCHIVED, 2, at(30))

        assert item.status == ItemStatus.ARCHIVED
        assert item.version == 3


class TestConnect:
    """Test the channel-facing operations."""

    @pytest.mark.asyncio
    async def test_new_session_starts_at_head(self, core, transport):
        await core.create_item("alice", created_at=T0)
        await core.create_item("alice", created_at=T0)

        result = await core.on_connect("alice", connection="sock-1")

        assert result.fresh is True
        assert result.replayed == 0
        assert result.watermark == 2
        assert transport.ids(result.session_id) == []
        assert core.presence.is_live(result.session_id)

    @pytest.mark.asyncio
    async def test_reconnect_gets_unacknowledged_events(self, core, transport):
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        item = await core.create_item("alice", created_at=T0)
        await walk(core, "alice", item, LIFECYCLE)
        assert transport.ids("phone") == [1, 2, 3, 4, 5]

        for event_id in (1, 2, 3):
            watermark = await core.acknowledge("phone", event_id)
        assert watermark == 3

        await core.on_disconnect("phone")
        transport.sent.clear()

        result = await core.on_connect("alice", connection="sock-2", session_id="phone")

        assert result.fresh is False
        assert result.replayed == 2
        assert transport.ids("phone") == [4, 5]
        assert result.watermark == 5

    @pytest.mark.asyncio
    async def test_live_and_offline_sessions(self, core, transport):
        await core.on_connect("alice", connection="sock-a", session_id="a")
        await core.on_connect("alice", connection="sock-b", session_id="b")
        await core.on_disconnect("b")

        item = await core.create_item("alice", created_at=T0)
        await core.submit_transition("alice", item.id, ItemStatus.ACTIVE, 0, at(60))

        assert transport.ids("a") == [1, 2]
        assert await core.event_log.delivery_status(2, "a") == DeliveryStatus.DELIVERED
        assert await core.event_log.delivery_status(2, "b") == DeliveryStatus.PENDING

        result = await core.on_connect("alice", connection="sock-b2", session_id="b")

        assert transport.ids("b") == [1, 2]
        assert result.watermark == 2
        assert await core.event_log.delivery_status(2, "b") == DeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_events_after_reconnect_are_live(self, core, transport):
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        await core.on_disconnect("phone")
        await core.create_item("alice", created_at=T0)
        await core.on_connect("alice", connection="sock-2", session_id="phone")

        await core.create_item("alice", created_at=T0)

        assert transport.ids("phone") == [1, 2]

    @pytest.mark.asyncio
    async def test_duplicate_live_session(self, core):
        await core.on_connect("alice", connection="sock-1", session_id="phone")

        with pytest.raises(DuplicateSession):
            await core.on_connect("alice", connection="sock-2", session_id="phone")

    @pytest.mark.asyncio
    async def test_session_of_other_user(self, core):
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        await core.on_disconnect("phone")

        with pytest.raises(DuplicateSession):
            await core.on_connect("bob", connection="sock-2", session_id="phone")

    @pytest.mark.asyncio
    async def test_resync_after_expiry(self, core, transport):
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        await core.on_disconnect("phone")
        await core.create_item("alice", created_at=T0)
        await core.create_item("alice", created_at=T0)

        report = await core.expire_now(now=datetime.now(timezone.utc) + timedelta(days=365))
        assert report.forced_users == ["alice"]

        result = await core.on_connect("alice", connection="sock-2", session_id="phone")

        assert result.resync_required is True
        assert result.replayed == 0
        assert result.watermark == 2
        assert transport.ids("phone") == []
        assert core.presence.is_live("phone")

        state = await core.full_state("alice")
        assert state["head"] == 2
        assert len(state["items"]) == 2

    @pytest.mark.asyncio
    async def test_resync_when_backlog_too_large(self, core, transport):
        core.reconciler.max_backlog = 2
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        await core.on_disconnect("phone")
        for _ in range(3):
            await core.create_item("alice", created_at=T0)

        result = await core.on_connect("alice", connection="sock-2", session_id="phone")

        assert result.resync_required is True
        assert result.watermark == 3
        assert transport.ids("phone") == []

    @pytest.mark.asyncio
    async def test_delivery_failure_then_reconnect(self, core, transport):
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        transport.failing.add("phone")

        await core.create_item("alice", created_at=T0)

        assert not core.presence.is_live("phone")
        assert transport.disconnected == ["phone"]

        transport.failing.clear()
        result = await core.on_connect("alice", connection="sock-2", session_id="phone")

        assert result.replayed == 1
        assert transport.ids("phone") == [1]

    @pytest.mark.asyncio
    async def test_heartbeat_eviction(self, core, transport):
        result = await core.on_connect("alice", connection="sock-1")
        session_id = result.session_id

        assert await core.on_heartbeat(session_id) is True
        evicted = await core.evict_stale_sessions(
            now=datetime.now(timezone.utc) + timedelta(seconds=120)
        )

        assert evicted == [session_id]
        assert transport.disconnected == [session_id]
        assert await core.on_heartbeat(session_id) is False

    @pytest.mark.asyncio
    async def test_logout_forgets_session(self, core):
        await core.on_connect("alice", connection="sock-1", session_id="phone")

        assert await core.logout("phone") is True

        assert await core.presence.get_session("phone") is None

    @pytest.mark.asyncio
    async def test_abandoned_session_stops_holding_back_expiry(self, core):
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        await core.on_disconnect("phone")
        await core.on_connect("alice", connection="sock-2", session_id="laptop")
        await core.create_item("alice", created_at=T0)
        await core.acknowledge("laptop", 1)
        retention = core.config.presence.session_retention
        later = datetime.now(timezone.utc) + timedelta(seconds=retention + 60)

        assert await core.cleanup_stale_sessions(later) == ["phone"]
        report = await core.expire_now(
            later + timedelta(days=core.config.event_log.retention_days)
        )

        assert report.events_dropped == 1
        assert report.forced_users == []
        assert await core.event_log.expired_through("alice") == 0

    @pytest.mark.asyncio
    async def test_slow_delivery_does_not_block_other_users(self, core, transport):
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        gate = transport.gates["phone"] = asyncio.Event()

        pending = asyncio.create_task(core.create_item("alice", created_at=T0))
        while "phone" not in transport.held:
            await asyncio.sleep(0.01)

        item = await asyncio.wait_for(core.create_item("bob", created_at=T0), timeout=5)

        assert item.owner_id == "bob"
        assert not pending.done()
        gate.set()
        await pending
        assert transport.ids("phone") == [1]


class TestAcknowledge:
    """Test client acknowledgments."""

    @pytest.mark.asyncio
    async def test_out_of_order_acks(self, core):
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        for _ in range(3):
            await core.create_item("alice", created_at=T0)

        assert await core.acknowledge("phone", 2) == 0
        assert await core.acknowledge("phone", 3) == 0
        assert await core.acknowledge("phone", 1) == 3
        assert await core.event_log.delivery_status(2, "phone") == DeliveryStatus.ACKNOWLEDGED

    @pytest.mark.asyncio
    async def test_acknowledge_through(self, core):
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        for _ in range(4):
            await core.create_item("alice", created_at=T0)

        assert await core.acknowledge_through("phone", 3) == 3
        assert await core.event_log.delivery_status(4, "phone") == DeliveryStatus.DELIVERED
        assert await core.acknowledge_through("phone", 99) == 4

    @pytest.mark.asyncio
    async def test_acknowledge_unknown_session(self, core):
        with pytest.raises(SessionNotFound):
            await core.acknowledge("ghost", 1)
        with pytest.raises(SessionNotFound):
            await core.acknowledge_through("ghost", 1)

    @pytest.mark.asyncio
    async def test_repeated_ack_is_harmless(self, core):
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        await core.create_item("alice", created_at=T0)

        assert await core.acknowledge("phone", 1) == 1
        assert await core.acknowledge("phone", 1) == 1


    @pytest.mark.asyncio
    async def test_ack_of_unassigned_event_is_rejected(self, core):
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        await core.create_item("alice", created_at=T0)

        with pytest.raises(EventNotFound):
            await core.acknowledge("phone", 3)
        with pytest.raises(EventNotFound):
            await core.acknowledge("phone", 0)

        await core.create_item("alice", created_at=T0)
        await core.create_item("alice", created_at=T0)
        await core.acknowledge("phone", 1)

        assert await core.acknowledge("phone", 2) == 2
        assert await core.event_log.delivery_status(3, "phone") == DeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_ack_of_expired_event_is_ignored(self, core):
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        await core.create_item("alice", created_at=T0)
        later = datetime.now(timezone.utc) + timedelta(days=core.config.event_log.retention_days + 1)
        await core.expire_now(later)

        assert await core.acknowledge("phone", 1) == 0
        assert await core.event_log.delivery_status(1, "phone") == DeliveryStatus.PENDING


class TestNotifications:
    """Test notification events."""

    @pytest.mark.asyncio
    async def test_notify(self, core, transport):
        await core.on_connect("alice", connection="sock-1", session_id="phone")

        event = await core.notify("alice", "due_date_reminder", {"todo_title": "Taxes"})

        assert event.kind == EventKind.NOTIFICATION
        assert event.payload["title"] == "Due Date Reminder: Taxes"
        assert transport.ids("phone") == [event.id]

    @pytest.mark.asyncio
    async def test_transition_notifications(self, core, transport):
        core.config.notifications.on_transition = True
        await core.on_connect("alice", connection="sock-1", session_id="phone")
        item = await core.create_item("alice", title="Taxes", created_at=T0)

        await core.submit_transition("alice", item.id, ItemStatus.ACTIVE, 0, at(60))

        sent = transport.sent["phone"]
        assert [e.kind for e in sent] == [
            EventKind.LIFECYCLE_CHANGE,
            EventKind.LIFECYCLE_CHANGE,
            EventKind.NOTIFICATION,
        ]
        assert sent[2].payload["message"] == 'Todo "Taxes" moved from created to active'


class TestManagedLifecycle:
    """Test start/stop and health."""

    @pytest.mark.asyncio
    async def test_start_spawns_background_tasks(self, core):
        await core.start()

        assert core.state == ManagerState.RUNNING
        assert len(core._tasks) == 3

    @pytest.mark.asyncio
    async def test_health_check(self, core):
        await core.on_connect("alice", connection="sock-1")

        health = await core.health_check()

        assert health.healthy
        assert health.details["live_sessions"] == 1
        assert health.details["online_users"] == 1

    @pytest.mark.asyncio
    async def test_stop_clears_live_sessions(self, test_config, transport):
        core = SyncCore(test_config, transport)
        await core.initialize()
        await core.on_connect("alice", connection="sock-1")

        await core.stop()

        assert core.state == ManagerState.STOPPED
        assert core.presence.online_users() == []

    @pytest.mark.asyncio
    async def test_start_before_initialize(self, test_config, transport):
        core = SyncCore(test_config, transport)

        with pytest.raises(ManagerNotReadyError):
            await core.start()

    @pytest.mark.asyncio
    async def test_start_twice(self, core):
        await core.start()

        assert core.is_running
        with pytest.raises(ManagerAlreadyRunningError):
            await core.start()
