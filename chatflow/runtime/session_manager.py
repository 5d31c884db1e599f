"""
Session Manager - lifecycle of flow sessions.

Sessions live in memory, which is authoritative while the process runs.
Every mutation is mirrored to the SessionStore on a best-effort basis: a
failed write is logged and the in-memory state carries on. After a restart
sessions are hydrated back from the store on first use.

Expiry: each active-status update re-derives ``expires_at`` from the
trigger node's *current* configuration (re-read from the flow provider),
so a changed timeout applies to sessions already running.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from chatflow.config import EngineConfig
from chatflow.errors import SessionNotFoundError
from chatflow.runtime.event_bus import EventBus
from chatflow.runtime.expiry import ExpiryManager
from chatflow.runtime.trigger import TriggerConfig
from chatflow.schemas.session_state import (
    LIVE_STATUSES,
    FlowSessionState,
    SessionStatus,
    utc_now,
)
from chatflow.storage.flow_provider import FlowProvider
from chatflow.storage.session_store import SessionStore, generate_session_id

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Creates, updates, loads and expires flow sessions.

    Example:
        manager = SessionManager(store, flows, event_bus)
        session_id = await manager.create_session(
            flow_id=1, conversation_id=42, contact_id=7, trigger_node_id="trigger-1",
            trigger_config=TriggerConfig.from_node(trigger),
        )
        await manager.update_session(session_id, current_node_id="welcome")
    """

    def __init__(
        self,
        store: SessionStore,
        flow_provider: FlowProvider,
        event_bus: EventBus | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.flow_provider = flow_provider
        self.event_bus = event_bus or EventBus()
        self.config = config or EngineConfig()
        self.clock = clock

        self.sessions: dict[str, FlowSessionState] = {}
        self.expiry = ExpiryManager(
            on_expire=self._on_timer,
            sweep=self.cleanup_expired_sessions,
            sweep_interval=self.config.sweep_interval_seconds,
            clock=clock,
        )

    # === CREATION ===

    async def create_session(
        self,
        flow_id: Any,
        conversation_id: Any,
        contact_id: Any,
        trigger_node_id: str,
        trigger_config: TriggerConfig | None = None,
        company_id: Any = None,
        variables: dict[str, Any] | None = None,
    ) -> str:
        """
        Create and persist a new active session positioned at its trigger.

        Returns:
            The new session id
        """
        now = self.clock()
        trigger_config = trigger_config or TriggerConfig()
        session = FlowSessionState(
            session_id=generate_session_id(),
            flow_id=flow_id,
            conversation_id=conversation_id,
            contact_id=contact_id,
            company_id=company_id,
            status=SessionStatus.ACTIVE,
            current_node_id=trigger_node_id,
            trigger_node_id=trigger_node_id,
            execution_path=[trigger_node_id],
            variables=dict(variables or {}),
            started_at=now,
            last_activity_at=now,
            expires_at=now + trigger_config.session_window(self.config),
        )
        self.sessions[session.session_id] = session

        try:
            await self.store.create_session(session.to_record())
        except Exception as e:
            logger.error(f"Failed to persist new session {session.session_id}: {e}")

        self.expiry.schedule(session.session_id, session.expires_at)
        self.event_bus.emit_session_created(
            session.session_id,
            flow_id=flow_id,
            conversation_id=conversation_id,
            trigger_node_id=trigger_node_id,
        )
        logger.info(
            f"Created session {session.session_id} for flow {flow_id} "
            f"(conversation {conversation_id}, expires {session.expires_at.isoformat()})"
        )
        return session.session_id

    # === LOOKUP ===

    def get_session(self, session_id: str) -> FlowSessionState | None:
        """In-memory session or None."""
        return self.sessions.get(session_id)

    async def load_session(self, session_id: str) -> FlowSessionState | None:
        """Memory first, then the store. Live sessions loaded from the store are cached."""
        session = self.sessions.get(session_id)
        if session is not None:
            return session

        session = await self.load_session_from_database(session_id)
        if session is not None and session.status in LIVE_STATUSES:
            self._adopt(session)
        return session

    async def load_session_from_database(self, session_id: str) -> FlowSessionState | None:
        """Hydrate a session from its store row and variable rows."""
        try:
            record = await self.store.get_session(session_id)
            if record is None:
                return None
            variables = await self.store.list_variables(session_id)
        except Exception as e:
            logger.error(f"Failed to load session {session_id} from store: {e}")
            return None
        try:
            return FlowSessionState.from_record(record, variables)
        except ValidationError as e:
            logger.error(f"Skipping corrupt store row of session {session_id}: {e}")
            return None

    async def live_sessions_for_conversation(
        self,
        conversation_id: Any,
        contact_id: Any = None,
    ) -> list[FlowSessionState]:
        """
        Non-expired active/waiting sessions of a conversation, most recent first.

        Sessions only present in the store are hydrated into memory; expired
        ones found on the way are expired.
        """
        now = self.clock()
        try:
            records = await self.store.find_sessions(
                conversation_id, contact_id=contact_id, statuses=LIVE_STATUSES
            )
        except Exception as e:
            logger.error(f"Failed to query sessions of conversation {conversation_id}: {e}")
            records = []

        for record in records:
            session_id = record.get("session_id")
            if not session_id or session_id in self.sessions:
                continue
            session = await self.load_session_from_database(session_id)
            if session is not None and session.status in LIVE_STATUSES:
                self._adopt(session)

        live = []
        for session in list(self.sessions.values()):
            if session.conversation_id != conversation_id:
                continue
            if contact_id is not None and session.contact_id != contact_id:
                continue
            if session.status not in LIVE_STATUSES:
                continue
            if session.is_expired(now):
                await self.expire_session(session.session_id)
                continue
            live.append(session)

        return sorted(live, key=lambda s: s.last_activity_at, reverse=True)

    async def find_live_session(
        self,
        trigger_node_id: str,
        conversation_id: Any,
        contact_id: Any,
    ) -> FlowSessionState | None:
        """The live session owning (trigger, conversation, contact), if any."""
        for session in await self.live_sessions_for_conversation(conversation_id, contact_id):
            if session.trigger_node_id == trigger_node_id:
                return session
        return None

    def _adopt(self, session: FlowSessionState) -> None:
        self.sessions[session.session_id] = session
        self.expiry.schedule(session.session_id, session.expires_at)
        logger.debug(f"Hydrated session {session.session_id} from store")

    # === MUTATION ===

    async def update_session(self, session_id: str, **changes: Any) -> FlowSessionState:
        """
        Merge field changes into a session and persist it.

        Bumps ``last_activity_at``; an ACTIVE session gets a fresh
        ``expires_at``; a terminal status cancels the timer and evicts the
        session from memory. A terminal session never becomes live again:
        such a status change is refused and the session returned as is.

        Raises:
            SessionNotFoundError: unknown session id
            AttributeError: a change names an unknown field
        """
        session = await self.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        if (
            session.status.is_terminal
            and "status" in changes
            and SessionStatus(changes["status"]) in LIVE_STATUSES
        ):
            logger.warning(
                f"Session {session_id} is already {session.status}; "
                f"refusing to move it back to {changes['status']}"
            )
            return session

        for name, value in changes.items():
            if name not in FlowSessionState.model_fields:
                raise AttributeError(f"FlowSessionState has no field '{name}'")
            if name == "status":
                value = SessionStatus(value)
            setattr(session, name, value)

        now = self.clock()
        session.last_activity_at = now

        if session.status == SessionStatus.ACTIVE:
            await self.renew_session_timeout(session)
        elif session.status.is_terminal:
            if session.completed_at is None:
                session.completed_at = now
            self.expiry.cancel(session_id)
            self.sessions.pop(session_id, None)

        await self._persist(session)
        self.event_bus.emit_session_updated(
            session_id,
            flow_id=session.flow_id,
            conversation_id=session.conversation_id,
            changes=list(changes),
            status=session.status.value,
        )
        return session

    async def renew_session_timeout(self, session: FlowSessionState) -> None:
        """Recompute ``expires_at`` from the trigger's current configuration."""
        trigger_config = await self._current_trigger_config(session)
        session.expires_at = session.last_activity_at + trigger_config.session_window(self.config)
        self.expiry.schedule(session.session_id, session.expires_at)

    async def _current_trigger_config(self, session: FlowSessionState) -> TriggerConfig:
        try:
            flow = await self.flow_provider.get_flow(session.flow_id)
        except Exception as e:
            logger.warning(f"Could not load flow {session.flow_id} for timeout renewal: {e}")
            flow = None
        node = flow.get_node(session.trigger_node_id) if flow else None
        if node is None:
            return TriggerConfig()
        return TriggerConfig.from_node(node)

    async def set_variables(self, session_id: str, changes: dict[str, Any]) -> list[str]:
        """
        Merge variables into a session (last writer wins).

        Each changed key is written as its own variable row.

        Returns:
            Keys whose value actually changed
        """
        session = await self.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        changed = [
            key
            for key, value in changes.items()
            if key not in session.variables or session.variables[key] != value
        ]
        for key in changed:
            session.variables[key] = changes[key]
            try:
                await self.store.upsert_variable(session_id, key, changes[key])
            except Exception as e:
                logger.error(f"Failed to persist variable '{key}' of {session_id}: {e}")
        return changed

    async def _persist(self, session: FlowSessionState) -> None:
        try:
            await self.store.update_session(session.session_id, session.to_record())
        except Exception as e:
            logger.error(f"Failed to persist session {session.session_id}: {e}")

    # === TERMINATION ===

    async def finish_session(
        self,
        session_id: str,
        status: SessionStatus,
        error: str | None = None,
    ) -> FlowSessionState:
        """Move a session to a terminal status and announce it."""
        changes: dict[str, Any] = {"status": status, "waiting_context": None}
        if error is not None:
            session = await self.load_session(session_id)
            error_count = session.error_count + 1 if session else 1
            changes.update(last_error_message=error, error_count=error_count)

        session = await self.update_session(session_id, **changes)
        if status == SessionStatus.COMPLETED:
            self.event_bus.emit_session_completed(
                session_id,
                flow_id=session.flow_id,
                conversation_id=session.conversation_id,
                execution_path=session.execution_path,
            )
        elif status == SessionStatus.FAILED:
            self.event_bus.emit_session_failed(
                session_id,
                error=error or "",
                node_id=session.current_node_id,
                flow_id=session.flow_id,
                conversation_id=session.conversation_id,
            )
        logger.info(f"Session {session_id} finished with status {status}")
        return session

    async def abandon_session(self, session_id: str) -> FlowSessionState:
        """Retire a live session that is being replaced or reset."""
        return await self.finish_session(session_id, SessionStatus.ABANDONED)

    async def expire_session(self, session_id: str) -> None:
        """Mark a session timed out, evict it and cancel its timer."""
        self.expiry.cancel(session_id)
        session = self.sessions.pop(session_id, None)
        if session is None:
            session = await self.load_session_from_database(session_id)
        if session is None or session.status.is_terminal:
            return

        session.status = SessionStatus.TIMEOUT
        session.waiting_context = None
        session.completed_at = self.clock()
        try:
            await self.store.expire_session(session_id)
            await self.store.update_session(session_id, session.to_record())
        except Exception as e:
            logger.error(f"Failed to persist expiry of session {session_id}: {e}")

        self.event_bus.emit_session_expired(
            session_id, flow_id=session.flow_id, conversation_id=session.conversation_id
        )
        logger.info(f"Session {session_id} expired")

    async def _on_timer(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is None or session.status not in LIVE_STATUSES:
            return
        if session.is_expired(self.clock()):
            await self.expire_session(session_id)
        else:
            self.expiry.schedule(session_id, session.expires_at)

    async def cleanup_expired_sessions(self) -> list[str]:
        """
        Sweep in-memory sessions whose deadline passed.

        Returns:
            Ids of the sessions expired by this sweep
        """
        now = self.clock()
        expired = [
            s.session_id
            for s in list(self.sessions.values())
            if s.status in LIVE_STATUSES and s.is_expired(now)
        ]
        for session_id in expired:
            await self.expire_session(session_id)
        if expired:
            logger.info(f"Expiry sweep timed out {len(expired)} session(s)")
        return expired

    # === SWEEP LIFECYCLE ===

    def start(self) -> None:
        self.expiry.start_sweep()

    async def stop(self) -> None:
        await self.expiry.stop()
