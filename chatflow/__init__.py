"""
chatflow - session-aware execution engine for conversational flows.

A flow is a directed graph authored in a visual builder: trigger nodes decide
which inbound messages start (or continue) a session, message and choice
nodes talk to the contact, and logic/integration nodes compute in between.
The engine keeps one session per (trigger, conversation, contact), suspends
it while waiting for a reply and resumes it on the next matching message.

Example:
    from chatflow import FlowEngine, InMemoryFlowProvider, InMemorySessionStore

    engine = FlowEngine(InMemorySessionStore(), flows, dispatcher)
    engine.start()
    await engine.process_message(message, conversation, contact, channel_connection)
"""

from chatflow.config import EngineConfig
from chatflow.errors import (
    ChatflowError,
    CycleDetectedError,
    FlowDefinitionError,
    FlowExecutionError,
    MaxDepthExceededError,
    NodeExecutionError,
    NodeExecutorNotFoundError,
    SessionNotFoundError,
)
from chatflow.executors import AIReply, AIResponder, ChannelDispatcher, NodeExecutorRegistry
from chatflow.graph import EdgeSpec, FlowSpec, NodeSpec, NodeType
from chatflow.graph.executor import ExecutionResult, FlowExecutor
from chatflow.runtime.engine import FlowEngine, ProcessingResult
from chatflow.runtime.event_bus import EventBus, EventType, SessionEvent
from chatflow.runtime.session_manager import SessionManager
from chatflow.schemas import (
    ChannelConnection,
    Contact,
    Conversation,
    FlowSessionState,
    InboundMessage,
    SessionStatus,
)
from chatflow.storage import (
    FileSessionStore,
    FlowProvider,
    InMemoryFlowProvider,
    InMemorySessionStore,
    SessionStore,
)

__all__ = [
    # Engine
    "FlowEngine",
    "ProcessingResult",
    "FlowExecutor",
    "ExecutionResult",
    "SessionManager",
    "EngineConfig",
    # Events
    "EventBus",
    "EventType",
    "SessionEvent",
    # Graph
    "FlowSpec",
    "NodeSpec",
    "NodeType",
    "EdgeSpec",
    # Executors
    "AIReply",
    "AIResponder",
    "ChannelDispatcher",
    "NodeExecutorRegistry",
    # Schemas
    "ChannelConnection",
    "Contact",
    "Conversation",
    "InboundMessage",
    "FlowSessionState",
    "SessionStatus",
    # Storage
    "FileSessionStore",
    "FlowProvider",
    "InMemoryFlowProvider",
    "InMemorySessionStore",
    "SessionStore",
    # Errors
    "ChatflowError",
    "CycleDetectedError",
    "FlowDefinitionError",
    "FlowExecutionError",
    "MaxDepthExceededError",
    "NodeExecutionError",
    "NodeExecutorNotFoundError",
    "SessionNotFoundError",
]
