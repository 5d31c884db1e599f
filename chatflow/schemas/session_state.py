"""
Flow Session State Schema - persisted state of one flow run for one conversation.

A session is created when a trigger node first matches an inbound message,
mutated on every traversal step and variable write, and finally marked
terminal. Sessions are never deleted from the store, only marked terminal.

Store rows keep array/map columns as JSON text; ``from_record`` hydrates
them through ``safe_parse_json`` so a corrupt column degrades to an empty
default instead of failing the load.
"""

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

Identifier = int | str


class SessionStatus(StrEnum):
    """Status of a flow session."""

    ACTIVE = "active"  # Traversing, or re-armed at its trigger
    WAITING = "waiting"  # Suspended on a node that needs user input
    PAUSED = "paused"  # Halted by an operator, not resumed by messages
    COMPLETED = "completed"  # Reached the end of the flow
    FAILED = "failed"  # Node error, cycle or depth violation
    ABANDONED = "abandoned"  # Replaced by a newer session or hard reset
    TIMEOUT = "timeout"  # Expired by timer or sweep

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_live(self) -> bool:
        return self in LIVE_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.ABANDONED,
        SessionStatus.TIMEOUT,
    }
)
LIVE_STATUSES = frozenset({SessionStatus.ACTIVE, SessionStatus.WAITING})


class NodeExecutionStatus(StrEnum):
    """Per-node bookkeeping status inside a session."""

    RUNNING = "running"
    COMPLETED = "completed"
    WAITING = "waiting"
    FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(UTC)


def safe_parse_json(raw: Any, default_factory: Callable[[], Any]) -> Any:
    """
    Decode a JSON column without ever raising.

    Already-decoded values of the right type pass through. ``None``,
    malformed JSON, or JSON of the wrong type yield ``default_factory()``.

    Args:
        raw: Column value (JSON text, decoded value, or None)
        default_factory: ``list`` or ``dict``; decides both the fallback
            and the accepted type

    Returns:
        Decoded value or a fresh empty default
    """
    expected_type = type(default_factory())
    value = raw
    if isinstance(raw, (str, bytes, bytearray)):
        if not raw:
            return default_factory()
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError, ValueError):
            logger.warning("Discarding malformed JSON column value")
            return default_factory()
    if not isinstance(value, expected_type):
        return default_factory()
    return value


class NodeState(BaseModel):
    """Execution bookkeeping for a single node of a session."""

    status: NodeExecutionStatus = NodeExecutionStatus.RUNNING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    # Resume selection recorded for choice/keyword nodes: {"handle": ..., "option_id": ...}
    selection: dict[str, Any] | None = None
    execution_count: int = 0

    model_config = {"extra": "allow"}


class WaitingContext(BaseModel):
    """What a waiting session expects from the next inbound message."""

    node_id: str
    expected_input_type: str
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = {"extra": "allow"}


class FlowSessionState(BaseModel):
    """
    Complete state of one flow session.

    Invariants:
    - at most one session with a live status per
      (trigger_node_id, conversation_id, contact_id)
    - while ACTIVE, ``expires_at`` is None or later than ``last_activity_at``
    - ``current_node_id`` names a node of the flow unless the status is terminal
    """

    # Identity
    session_id: str  # Format: session_YYYYMMDD_HHMMSS_{uuid_8char}
    flow_id: Identifier
    conversation_id: Identifier
    contact_id: Identifier
    company_id: Identifier | None = None

    # Status & position
    status: SessionStatus = SessionStatus.ACTIVE
    current_node_id: str | None = None
    trigger_node_id: str
    execution_path: list[str] = Field(default_factory=list)

    # Data
    variables: dict[str, Any] = Field(default_factory=dict)
    node_states: dict[str, NodeState] = Field(default_factory=dict)
    waiting_context: WaitingContext | None = None

    # Timestamps
    started_at: datetime = Field(default_factory=utc_now)
    last_activity_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime | None = None
    completed_at: datetime | None = None

    # AI hand-off sub-state
    ai_session_active: bool = False
    ai_node_id: str | None = None
    ai_stop_keyword: str | None = None
    ai_exit_output_handle: str | None = None

    # Counters
    node_execution_count: int = 0
    user_interaction_count: int = 0
    error_count: int = 0
    last_error_message: str | None = None

    model_config = {"extra": "allow"}

    def session_key(self) -> tuple[str, Identifier, Identifier]:
        """The key under which at most one live session may exist."""
        return (self.trigger_node_id, self.conversation_id, self.contact_id)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now())

    def to_record(self) -> dict[str, Any]:
        """Serialize to a store row; array/map columns become JSON text."""
        data = self.model_dump(mode="json")
        return {
            "session_id": data["session_id"],
            "flow_id": data["flow_id"],
            "conversation_id": data["conversation_id"],
            "contact_id": data["contact_id"],
            "company_id": data["company_id"],
            "status": data["status"],
            "current_node_id": data["current_node_id"],
            "trigger_node_id": data["trigger_node_id"],
            "execution_path": json.dumps(data["execution_path"]),
            "session_data": json.dumps(data["variables"]),
            "node_states": json.dumps(data["node_states"]),
            "waiting_context": (
                json.dumps(data["waiting_context"]) if data["waiting_context"] else None
            ),
            "started_at": data["started_at"],
            "last_activity_at": data["last_activity_at"],
            "expires_at": data["expires_at"],
            "completed_at": data["completed_at"],
            "ai_session_active": data["ai_session_active"],
            "ai_node_id": data["ai_node_id"],
            "ai_stop_keyword": data["ai_stop_keyword"],
            "ai_exit_output_handle": data["ai_exit_output_handle"],
            "node_execution_count": data["node_execution_count"],
            "user_interaction_count": data["user_interaction_count"],
            "error_count": data["error_count"],
            "last_error_message": data["last_error_message"],
        }

    @classmethod
    def from_record(
        cls,
        record: dict[str, Any],
        variables: dict[str, Any] | None = None,
    ) -> "FlowSessionState":
        """
        Hydrate from a store row.

        Args:
            record: Row as produced by ``to_record`` (JSON columns may be text,
                decoded values, or garbage)
            variables: Per-variable rows; they win over the ``session_data`` blob

        Returns:
            FlowSessionState
        """
        merged_variables = safe_parse_json(record.get("session_data"), dict)
        if variables:
            merged_variables.update(variables)

        node_states: dict[str, NodeState] = {}
        for node_id, raw_state in safe_parse_json(record.get("node_states"), dict).items():
            try:
                node_states[node_id] = NodeState.model_validate(raw_state)
            except ValidationError:
                logger.warning(f"Dropping malformed node state for '{node_id}'")

        waiting_context = None
        raw_waiting = safe_parse_json(record.get("waiting_context"), dict)
        if raw_waiting:
            try:
                waiting_context = WaitingContext.model_validate(raw_waiting)
            except ValidationError:
                logger.warning("Dropping malformed waiting context")

        execution_path = [
            str(node_id) for node_id in safe_parse_json(record.get("execution_path"), list)
        ]

        fields = {
            key: value
            for key, value in record.items()
            if key
            not in {"session_data", "node_states", "waiting_context", "execution_path"}
            and value is not None
        }
        return cls.model_validate(
            {
                **fields,
                "execution_path": execution_path,
                "variables": merged_variables,
                "node_states": node_states,
                "waiting_context": waiting_context,
            }
        )
