"""
Flow Definition Provider - where the engine reads flows from.

The engine asks for a flow by id (to re-read trigger configuration on
every session update) and for the active flows assigned to a channel
connection (to run trigger matching). Implementations return parsed
``FlowSpec`` objects; ``FlowSpec.from_record`` accepts both stored shapes
(one ``definition`` blob, or separate ``nodes``/``edges`` columns).
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from chatflow.graph.edge import FlowSpec

logger = logging.getLogger(__name__)

ACTIVE_FLOW_STATUSES = frozenset({"active"})


class FlowProvider(ABC):
    """Abstract read-only access to flow definitions."""

    @abstractmethod
    async def get_flow(self, flow_id: Any) -> FlowSpec | None:
        """Return the flow or None."""

    @abstractmethod
    async def get_flows_for_channel(self, channel_connection_id: Any) -> list[FlowSpec]:
        """Active flows assigned to a channel connection, in assignment order."""


class InMemoryFlowProvider(FlowProvider):
    """
    Flows registered in process.

    Example:
        provider = InMemoryFlowProvider()
        provider.add_flow({"id": 1, "nodes": "[...]", "edges": "[...]"}, channels=[10])
    """

    def __init__(self):
        self._flows: dict[Any, FlowSpec] = {}
        self._assignments: dict[Any, list[Any]] = {}

    def add_flow(
        self,
        flow: FlowSpec | dict[str, Any],
        channels: list[Any] | None = None,
    ) -> FlowSpec:
        """Register (or replace) a flow and assign it to channel connections."""
        spec = flow if isinstance(flow, FlowSpec) else FlowSpec.from_record(flow)
        self._flows[spec.id] = spec
        for channel_id in channels or []:
            assigned = self._assignments.setdefault(channel_id, [])
            if spec.id not in assigned:
                assigned.append(spec.id)
        logger.debug(f"Registered flow {spec.id} ({len(spec.nodes)} nodes)")
        return spec

    def remove_flow(self, flow_id: Any) -> None:
        self._flows.pop(flow_id, None)
        for assigned in self._assignments.values():
            if flow_id in assigned:
                assigned.remove(flow_id)

    @classmethod
    def from_file(cls, path: Path, channels: list[Any] | None = None) -> "InMemoryFlowProvider":
        """Load a single flow record (or a list of records) from a JSON file."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        provider = cls()
        for record in data if isinstance(data, list) else [data]:
            provider.add_flow(record, channels=channels)
        return provider

    async def get_flow(self, flow_id: Any) -> FlowSpec | None:
        return self._flows.get(flow_id)

    async def get_flows_for_channel(self, channel_connection_id: Any) -> list[FlowSpec]:
        flows = [self._flows[f] for f in self._assignments.get(channel_connection_id, [])]
        return [f for f in flows if f.status in ACTIVE_FLOW_STATUSES]
