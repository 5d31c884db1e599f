"""
Collaborator protocols and generic executors.

Executors never talk to a channel API directly; they call a
``ChannelDispatcher`` supplied by the host application. AI and translation
nodes likewise delegate to injected ``AIResponder`` / ``Translator``
implementations.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from chatflow.graph.node import ExecutionContext, NodeSpec
    from chatflow.schemas.messaging import ChannelConnection, Contact, Conversation

logger = logging.getLogger(__name__)


class ChannelDispatcher(Protocol):
    """Outbound messaging, implemented by the host application."""

    async def send_message(
        self,
        channel_connection: "ChannelConnection",
        conversation: "Conversation",
        contact: "Contact",
        content: str,
        **options: Any,
    ) -> None: ...

    async def send_media(
        self,
        channel_connection: "ChannelConnection",
        conversation: "Conversation",
        contact: "Contact",
        media_type: str,
        media_url: str,
        caption: str = "",
    ) -> None: ...


@dataclass
class AIReply:
    """What an AI provider produced for one conversational turn."""

    text: str = ""
    triggered_tasks: list[str] = field(default_factory=list)  # Task ids
    variables: dict[str, Any] = field(default_factory=dict)


class AIResponder(Protocol):
    """Produces AI replies for AI assistant nodes."""

    async def respond(self, node: "NodeSpec", context: "ExecutionContext") -> AIReply: ...


class Translator(Protocol):
    """Translates text for translation nodes."""

    async def translate(self, text: str, target_language: str) -> str: ...


class NoOpExecutor:
    """Nodes whose behaviour is entirely handled by the walker (trigger, condition)."""

    async def execute(self, node, context, conversation, contact, channel_connection) -> None:
        return None


class PassThroughExecutor:
    """
    Fallback for integration nodes without a configured executor.

    Logs and lets traversal continue along the node's outgoing edges.
    """

    async def execute(self, node, context, conversation, contact, channel_connection) -> None:
        logger.warning(
            f"No integration configured for {node.type} node '{node.id}'; passing through"
        )
