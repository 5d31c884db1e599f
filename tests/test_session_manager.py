"""Tests for session lifecycle, persistence mirroring and expiry."""

import asyncio
from datetime import timedelta

import pytest

from chatflow.errors import SessionNotFoundError
from chatflow.runtime.event_bus import EventType
from chatflow.runtime.session_manager import SessionManager
from chatflow.runtime.trigger import TriggerConfig
from chatflow.schemas.session_state import SessionStatus
from chatflow.storage.session_store import InMemorySessionStore


class BrokenStore(InMemorySessionStore):
    """Store whose every operation fails."""

    async def create_session(self, record):
        raise OSError("disk full")

    async def update_session(self, session_id, record):
        raise OSError("disk full")

    async def upsert_variable(self, session_id, key, value):
        raise OSError("disk full")

    async def find_sessions(self, *args, **kwargs):
        raise OSError("disk full")


def add_trigger_flow(flows, flow_builder, **trigger_data):
    return flows.add_flow(
        flow_builder(
            [
                {"id": "trigger", "type": "trigger", "data": trigger_data},
                {"id": "m", "type": "message"},
            ],
            [("trigger", "m")],
        )
    )


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_new_session_is_active_and_persisted(self, manager, store, event_bus, clock):
        session_id = await manager.create_session(
            flow_id=1,
            conversation_id=42,
            contact_id=7,
            trigger_node_id="trigger",
            company_id=3,
            variables={"source": "ad"},
        )

        session = manager.get_session(session_id)
        assert session.status == SessionStatus.ACTIVE
        assert session.current_node_id == "trigger"
        assert session.execution_path == ["trigger"]
        assert session.variables == {"source": "ad"}
        assert session.expires_at == clock() + timedelta(minutes=30)
        assert manager.expiry.has_timer(session_id)

        record = await store.get_session(session_id)
        assert record["status"] == "active"
        assert record["company_id"] == 3

        await event_bus.drain()
        created = event_bus.get_history(EventType.SESSION_CREATED)
        assert [e.session_id for e in created] == [session_id]

    @pytest.mark.asyncio
    async def test_window_follows_trigger_config(self, manager, clock):
        config = TriggerConfig(session_timeout=2, session_timeout_unit="hours")

        session_id = await manager.create_session(1, 42, 7, "trigger", trigger_config=config)

        assert manager.get_session(session_id).expires_at == clock() + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_store_failure_is_tolerated(self, flows, event_bus, clock):
        manager = SessionManager(BrokenStore(), flows, event_bus=event_bus, clock=clock)

        session_id = await manager.create_session(1, 42, 7, "trigger")
        await manager.update_session(session_id, current_node_id="m")
        assert await manager.set_variables(session_id, {"x": 1}) == ["x"]

        session = manager.get_session(session_id)
        assert session.current_node_id == "m"
        assert session.variables == {"x": 1}
        assert [s.session_id for s in await manager.live_sessions_for_conversation(42)] == [
            session_id
        ]
        await manager.stop()


class TestUpdateSession:
    @pytest.mark.asyncio
    async def test_merges_fields_and_bumps_activity(self, manager, store, clock):
        session_id = await manager.create_session(1, 42, 7, "trigger")
        clock.advance(minutes=5)

        session = await manager.update_session(
            session_id, current_node_id="m", execution_path=["trigger", "m"]
        )

        assert session.current_node_id == "m"
        assert session.last_activity_at == clock()
        assert session.expires_at == clock() + timedelta(minutes=30)
        record = await store.get_session(session_id)
        assert record["current_node_id"] == "m"

    @pytest.mark.asyncio
    async def test_changed_timeout_applies_to_running_session(
        self, manager, flows, flow_builder, clock
    ):
        add_trigger_flow(flows, flow_builder, sessionTimeout=30, sessionTimeoutUnit="minutes")
        session_id = await manager.create_session(1, 42, 7, "trigger")

        add_trigger_flow(flows, flow_builder, sessionTimeout=1, sessionTimeoutUnit="minutes")
        clock.advance(seconds=10)
        session = await manager.update_session(session_id, current_node_id="m")

        assert session.expires_at == clock() + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_waiting_keeps_deadline(self, manager, clock):
        session_id = await manager.create_session(1, 42, 7, "trigger")
        deadline = manager.get_session(session_id).expires_at
        clock.advance(minutes=1)

        session = await manager.update_session(session_id, status=SessionStatus.WAITING)

        assert session.expires_at == deadline

    @pytest.mark.asyncio
    async def test_terminal_status_evicts(self, manager, store):
        session_id = await manager.create_session(1, 42, 7, "trigger")

        await manager.update_session(session_id, status="completed")

        assert manager.get_session(session_id) is None
        assert not manager.expiry.has_timer(session_id)
        record = await store.get_session(session_id)
        assert record["status"] == "completed"
        assert record["completed_at"] is not None

    @pytest.mark.asyncio
    async def test_timed_out_session_is_not_revived(self, manager, store):
        session_id = await manager.create_session(1, 42, 7, "trigger")
        await manager.expire_session(session_id)

        session = await manager.update_session(
            session_id, status=SessionStatus.WAITING, current_node_id="ask"
        )

        assert session.status == SessionStatus.TIMEOUT
        assert manager.get_session(session_id) is None
        assert not manager.expiry.has_timer(session_id)
        record = await store.get_session(session_id)
        assert record["status"] == "timeout"
        assert record["current_node_id"] == "trigger"
        assert await manager.live_sessions_for_conversation(42) == []

    @pytest.mark.asyncio
    async def test_unknown_session_and_field(self, manager):
        with pytest.raises(SessionNotFoundError):
            await manager.update_session("session_missing", current_node_id="x")

        session_id = await manager.create_session(1, 42, 7, "trigger")
        with pytest.raises(AttributeError):
            await manager.update_session(session_id, colour="blue")

    @pytest.mark.asyncio
    async def test_renew_session_timeout(self, manager, flows, flow_builder, clock):
        add_trigger_flow(flows, flow_builder, sessionTimeout=2, sessionTimeoutUnit="hours")
        session_id = await manager.create_session(1, 42, 7, "trigger")
        session = manager.get_session(session_id)
        clock.advance(minutes=20)
        session.last_activity_at = clock()

        await manager.renew_session_timeout(session)

        assert session.expires_at == clock() + timedelta(hours=2)


class TestVariables:
    @pytest.mark.asyncio
    async def test_returns_changed_keys_and_writes_rows(self, manager, store):
        session_id = await manager.create_session(1, 42, 7, "trigger", variables={"a": 1})

        changed = await manager.set_variables(session_id, {"a": 1, "b": 2})

        assert changed == ["b"]
        assert manager.get_session(session_id).variables == {"a": 1, "b": 2}
        assert await store.list_variables(session_id) == {"b": 2}

    @pytest.mark.asyncio
    async def test_last_writer_wins(self, manager, store):
        session_id = await manager.create_session(1, 42, 7, "trigger")

        await manager.set_variables(session_id, {"city": "Lyon"})
        await manager.set_variables(session_id, {"city": "Paris"})

        assert manager.get_session(session_id).variables["city"] == "Paris"
        assert await store.list_variables(session_id) == {"city": "Paris"}


class TestLookup:
    @pytest.mark.asyncio
    async def test_live_sessions_most_recent_first(self, manager, clock):
        older = await manager.create_session(1, 42, 7, "t1")
        clock.advance(seconds=5)
        newer = await manager.create_session(2, 42, 7, "t2")
        other_conversation = await manager.create_session(1, 43, 7, "t1")
        finished = await manager.create_session(3, 42, 7, "t3")
        await manager.finish_session(finished, SessionStatus.COMPLETED)

        live = await manager.live_sessions_for_conversation(42, 7)

        assert [s.session_id for s in live] == [newer, older]
        assert other_conversation not in [s.session_id for s in live]

    @pytest.mark.asyncio
    async def test_expired_sessions_are_expired_on_lookup(self, manager, store, clock):
        session_id = await manager.create_session(1, 42, 7, "trigger")
        clock.advance(minutes=31)

        assert await manager.live_sessions_for_conversation(42) == []
        assert (await store.get_session(session_id))["status"] == "timeout"

    @pytest.mark.asyncio
    async def test_find_live_session_by_key(self, manager):
        session_id = await manager.create_session(1, 42, 7, "trigger")

        assert (await manager.find_live_session("trigger", 42, 7)).session_id == session_id
        assert await manager.find_live_session("other", 42, 7) is None
        assert await manager.find_live_session("trigger", 42, 8) is None

    @pytest.mark.asyncio
    async def test_restart_hydrates_from_store(self, manager, store, flows, event_bus, clock):
        session_id = await manager.create_session(1, 42, 7, "trigger")
        await manager.set_variables(session_id, {"name": "Ada"})
        await manager.update_session(session_id, status=SessionStatus.WAITING)
        await manager.stop()

        restarted = SessionManager(store, flows, event_bus=event_bus, clock=clock)
        assert restarted.get_session(session_id) is None

        live = await restarted.live_sessions_for_conversation(42, 7)

        assert [s.session_id for s in live] == [session_id]
        assert live[0].status == SessionStatus.WAITING
        assert live[0].variables == {"name": "Ada"}
        assert restarted.get_session(session_id) is live[0]
        assert restarted.expiry.has_timer(session_id)
        await restarted.stop()

    @pytest.mark.asyncio
    async def test_corrupt_store_row_is_skipped(self, manager, store, flows, event_bus, clock):
        broken_id = await manager.create_session(1, 42, 7, "trigger")
        await manager.update_session(broken_id, status=SessionStatus.WAITING)
        healthy_id = await manager.create_session(2, 42, 7, "trigger")
        await manager.stop()
        record = await store.get_session(broken_id)
        await store.update_session(broken_id, {**record, "started_at": "not-a-date"})

        restarted = SessionManager(store, flows, event_bus=event_bus, clock=clock)
        live = await restarted.live_sessions_for_conversation(42, 7)

        assert [s.session_id for s in live] == [healthy_id]
        assert await restarted.load_session_from_database(broken_id) is None
        await restarted.stop()

    @pytest.mark.asyncio
    async def test_load_session_falls_back_to_store(self, manager, store, flows, clock):
        session_id = await manager.create_session(1, 42, 7, "trigger")
        await manager.finish_session(session_id, SessionStatus.COMPLETED)

        loaded = await manager.load_session(session_id)

        assert loaded.status == SessionStatus.COMPLETED
        assert manager.get_session(session_id) is None
        assert await manager.load_session("session_missing") is None


class TestTermination:
    @pytest.mark.asyncio
    async def test_failed_records_error(self, manager, store, event_bus):
        session_id = await manager.create_session(1, 42, 7, "trigger")

        session = await manager.finish_session(session_id, SessionStatus.FAILED, error="boom")

        assert session.last_error_message == "boom"
        assert session.error_count == 1
        await event_bus.drain()
        failed = event_bus.get_history(EventType.SESSION_FAILED)[0]
        assert failed.data == {"error": "boom"}
        assert failed.node_id == "trigger"

    @pytest.mark.asyncio
    async def test_completed_event_carries_path(self, manager, event_bus):
        session_id = await manager.create_session(1, 42, 7, "trigger")
        await manager.update_session(session_id, execution_path=["trigger", "m"])

        await manager.finish_session(session_id, SessionStatus.COMPLETED)

        await event_bus.drain()
        completed = event_bus.get_history(EventType.SESSION_COMPLETED)[0]
        assert completed.data == {"execution_path": ["trigger", "m"]}

    @pytest.mark.asyncio
    async def test_abandon(self, manager):
        session_id = await manager.create_session(1, 42, 7, "trigger")

        session = await manager.abandon_session(session_id)

        assert session.status == SessionStatus.ABANDONED
        assert await manager.live_sessions_for_conversation(42) == []


class TestExpiry:
    @pytest.mark.asyncio
    async def test_sweep_expires_one_minute_session_after_61_seconds(
        self, manager, store, flows, flow_builder, event_bus, clock
    ):
        add_trigger_flow(flows, flow_builder, sessionTimeout=1, sessionTimeoutUnit="minutes")
        config = TriggerConfig(session_timeout=1, session_timeout_unit="minutes")
        session_id = await manager.create_session(1, 42, 7, "trigger", trigger_config=config)

        clock.advance(seconds=59)
        assert await manager.cleanup_expired_sessions() == []

        clock.advance(seconds=2)
        assert await manager.cleanup_expired_sessions() == [session_id]

        assert manager.get_session(session_id) is None
        assert not manager.expiry.has_timer(session_id)
        record = await store.get_session(session_id)
        assert record["status"] == "timeout"
        assert record["waiting_context"] is None
        await event_bus.drain()
        assert event_bus.get_history(EventType.SESSION_EXPIRED)[0].session_id == session_id

    @pytest.mark.asyncio
    async def test_expiring_terminal_session_is_a_noop(self, manager, store, event_bus):
        session_id = await manager.create_session(1, 42, 7, "trigger")
        await manager.finish_session(session_id, SessionStatus.COMPLETED)

        await manager.expire_session(session_id)

        assert (await store.get_session(session_id))["status"] == "completed"
        await event_bus.drain()
        assert event_bus.get_history(EventType.SESSION_EXPIRED) == []

    @pytest.mark.asyncio
    async def test_timer_fires_at_deadline(self, manager, store, clock):
        session_id = await manager.create_session(1, 42, 7, "trigger")
        session = manager.get_session(session_id)
        clock.advance(minutes=30)

        manager.expiry.schedule(session_id, session.expires_at)
        await asyncio.sleep(0.05)

        assert manager.get_session(session_id) is None
        assert (await store.get_session(session_id))["status"] == "timeout"

    @pytest.mark.asyncio
    async def test_early_timer_reschedules(self, manager, clock):
        session_id = await manager.create_session(1, 42, 7, "trigger")

        manager.expiry.schedule(session_id, clock())
        await asyncio.sleep(0.05)

        assert manager.get_session(session_id).status == SessionStatus.ACTIVE
        assert manager.expiry.has_timer(session_id)
