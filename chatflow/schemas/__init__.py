"""Pydantic schemas for sessions and messaging boundary types."""

from chatflow.schemas.messaging import ChannelConnection, Contact, Conversation, InboundMessage
from chatflow.schemas.session_state import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    FlowSessionState,
    NodeExecutionStatus,
    NodeState,
    SessionStatus,
    WaitingContext,
    safe_parse_json,
)

__all__ = [
    "ChannelConnection",
    "Contact",
    "Conversation",
    "InboundMessage",
    "FlowSessionState",
    "NodeExecutionStatus",
    "NodeState",
    "SessionStatus",
    "WaitingContext",
    "LIVE_STATUSES",
    "TERMINAL_STATUSES",
    "safe_parse_json",
]
