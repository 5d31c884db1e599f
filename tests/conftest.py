"""Shared fixtures: recording dispatcher, controllable clock and flow builders."""

import os
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio

from chatflow.config import EngineConfig
from chatflow.graph.edge import FlowSpec
from chatflow.observability import clear_trace_context
from chatflow.runtime.event_bus import EventBus
from chatflow.runtime.session_manager import SessionManager
from chatflow.schemas.messaging import ChannelConnection, Contact, Conversation, InboundMessage
from chatflow.storage.flow_provider import InMemoryFlowProvider
from chatflow.storage.session_store import InMemorySessionStore


class RecordingDispatcher:
    """Channel dispatcher that remembers everything it was asked to send."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def send_message(self, channel_connection, conversation, contact, content, **options):
        self.sent.append({"kind": "text", "content": content, "options": options})

    async def send_media(
        self, channel_connection, conversation, contact, media_type, media_url, caption=""
    ):
        self.sent.append(
            {"kind": media_type, "content": caption, "media_url": media_url, "options": {}}
        )

    @property
    def texts(self) -> list[str]:
        return [m["content"] for m in self.sent]


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 10, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def build_flow(
    nodes: list[dict[str, Any]],
    edges: list[tuple] | list[dict[str, Any]],
    flow_id: Any = 1,
    name: str = "Test flow",
) -> FlowSpec:
    """
    Build a flow from node dicts and (source, target[, handle]) edge tuples.

    Edge dicts are passed through untouched.
    """
    raw_edges = []
    for index, edge in enumerate(edges):
        if isinstance(edge, dict):
            raw_edges.append(edge)
            continue
        source, target, *rest = edge
        raw = {"id": f"e{index}", "source": source, "target": target}
        if rest and rest[0]:
            raw["sourceHandle"] = rest[0]
        raw_edges.append(raw)
    return FlowSpec.from_record({"id": flow_id, "name": name, "nodes": nodes, "edges": raw_edges})


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Keep the developer's ~/.chatflow and CHATFLOW_* variables out of tests."""
    for name in list(os.environ):
        if name.startswith("CHATFLOW_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("CHATFLOW_CONFIG_FILE", str(tmp_path / "configuration.json"))


@pytest.fixture(autouse=True)
def _reset_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def flow_builder():
    return build_flow


@pytest.fixture
def contact() -> Contact:
    return Contact(id=7, name="Ada", phone="+15550100", attributes={"tier": "gold"})


@pytest.fixture
def conversation(contact) -> Conversation:
    return Conversation(id=42, contact_id=contact.id, channel_type="whatsapp", company_id=3)


@pytest.fixture
def channel() -> ChannelConnection:
    return ChannelConnection(id=10, channel_type="whatsapp", company_id=3)


@pytest.fixture
def make_message(conversation):
    """Factory for inbound messages with unique ids."""
    counter = {"n": 0}

    def _make(content: str = "", **kwargs: Any) -> InboundMessage:
        counter["n"] += 1
        kwargs.setdefault("id", f"wamid.{counter['n']}")
        return InboundMessage(conversation_id=conversation.id, content=content, **kwargs)

    return _make


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def flows() -> InMemoryFlowProvider:
    return InMemoryFlowProvider()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture
async def manager(store, flows, event_bus, engine_config, clock):
    """Session manager over in-memory storage; timers cancelled on teardown."""
    session_manager = SessionManager(
        store, flows, event_bus=event_bus, config=engine_config, clock=clock
    )
    yield session_manager
    await session_manager.stop()
    await event_bus.drain()
