"""Persistence boundaries: session store and flow provider."""

from chatflow.storage.flow_provider import FlowProvider, InMemoryFlowProvider
from chatflow.storage.session_store import (
    FileSessionStore,
    InMemorySessionStore,
    SessionStore,
    generate_session_id,
)

__all__ = [
    "FlowProvider",
    "InMemoryFlowProvider",
    "SessionStore",
    "InMemorySessionStore",
    "FileSessionStore",
    "generate_session_id",
]
