"""Node executor lookup by node type."""

import logging
from collections.abc import Callable
from datetime import datetime

import httpx

from chatflow.config import EngineConfig
from chatflow.errors import NodeExecutorNotFoundError
from chatflow.executors.ai import AIAssistantExecutor
from chatflow.executors.base import (
    AIResponder,
    ChannelDispatcher,
    NoOpExecutor,
    PassThroughExecutor,
    Translator,
)
from chatflow.executors.http import HttpRequestExecutor, WebhookExecutor
from chatflow.executors.logic import (
    ActionExecutor,
    BotControlExecutor,
    ConditionExecutor,
    DataCaptureExecutor,
    InputExecutor,
    PipelineStageExecutor,
    TranslationExecutor,
    WaitExecutor,
)
from chatflow.executors.messaging import (
    MEDIA_NODE_TYPES,
    ChoiceExecutor,
    MessageExecutor,
    MediaExecutor,
)
from chatflow.graph.node import NODE_TYPE_CATEGORIES, NodeCategory, NodeExecutor, NodeType

logger = logging.getLogger(__name__)

# Node types that fall back to a pass-through when nothing is registered
PASS_THROUGH_CATEGORIES = frozenset(
    {
        NodeCategory.INTEGRATION,
        NodeCategory.ECOMMERCE,
        NodeCategory.EXTERNAL,
        NodeCategory.CALENDAR,
    }
)
PASS_THROUGH_TYPES = frozenset({NodeType.CODE_EXECUTION, NodeType.WHATSAPP_FLOWS})


class NodeExecutorRegistry:
    """
    Maps node types to executors.

    Integration nodes (e-commerce, external automation, calendar, AI without
    a responder) that have no registered executor resolve to a
    ``PassThroughExecutor``; any other missing type is an error.
    """

    def __init__(self):
        self._executors: dict[NodeType, NodeExecutor] = {}
        self._pass_through = PassThroughExecutor()

    def register(self, node_type: NodeType | str, executor: NodeExecutor) -> None:
        self._executors[NodeType(node_type)] = executor

    def unregister(self, node_type: NodeType | str) -> None:
        self._executors.pop(NodeType(node_type), None)

    def has_executor(self, node_type: NodeType | str) -> bool:
        return NodeType(node_type) in self._executors

    def get(self, node_type: NodeType | str) -> NodeExecutor:
        """
        Resolve the executor for a node type.

        Raises:
            NodeExecutorNotFoundError: non-integration type with no executor
        """
        node_type = NodeType(node_type)
        executor = self._executors.get(node_type)
        if executor is not None:
            return executor
        category = NODE_TYPE_CATEGORIES[node_type]
        if node_type in PASS_THROUGH_TYPES or category in PASS_THROUGH_CATEGORIES:
            return self._pass_through
        raise NodeExecutorNotFoundError(str(node_type))

    @property
    def registered_types(self) -> list[NodeType]:
        return list(self._executors)

    @classmethod
    def with_defaults(
        cls,
        dispatcher: ChannelDispatcher,
        http_client: httpx.AsyncClient | None = None,
        ai_responder: AIResponder | None = None,
        translator: Translator | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> "NodeExecutorRegistry":
        """
        Build a registry with every built-in executor.

        Args:
            dispatcher: Outbound channel messaging
            http_client: Shared client for HTTP request and webhook nodes
            ai_responder: AI provider bridge; AI nodes pass through without one
            translator: Translation backend; text is copied unchanged without one
            config: Engine configuration (HTTP timeout)
            clock: Time source for time-window conditions (wall clock by default)

        Returns:
            Populated registry
        """
        timeout = (config or EngineConfig()).http_timeout_seconds
        registry = cls()

        registry.register(NodeType.TRIGGER, NoOpExecutor())

        message = MessageExecutor(dispatcher)
        for node_type in (
            NodeType.MESSAGE,
            NodeType.FOLLOW_UP,
            NodeType.WHATSAPP_CTA_URL,
            NodeType.WHATSAPP_LOCATION_REQUEST,
        ):
            registry.register(node_type, message)

        media = MediaExecutor(dispatcher)
        for node_type in MEDIA_NODE_TYPES:
            registry.register(node_type, media)

        choice = ChoiceExecutor(dispatcher)
        for node_type in (
            NodeType.QUICK_REPLY,
            NodeType.WHATSAPP_INTERACTIVE_BUTTONS,
            NodeType.WHATSAPP_INTERACTIVE_LIST,
            NodeType.WHATSAPP_POLL,
        ):
            registry.register(node_type, choice)

        registry.register(NodeType.CONDITION, ConditionExecutor(clock=clock))
        registry.register(NodeType.WAIT, WaitExecutor())
        registry.register(NodeType.INPUT, InputExecutor(dispatcher))
        registry.register(NodeType.ACTION, ActionExecutor())
        registry.register(NodeType.DATA_CAPTURE, DataCaptureExecutor())
        registry.register(NodeType.TRANSLATION, TranslationExecutor(translator))

        registry.register(NodeType.HTTP_REQUEST, HttpRequestExecutor(http_client, timeout))
        registry.register(NodeType.WEBHOOK, WebhookExecutor(http_client, timeout))
        if ai_responder is not None:
            registry.register(
                NodeType.AI_ASSISTANT, AIAssistantExecutor(dispatcher, ai_responder)
            )

        bot_control = BotControlExecutor(dispatcher)
        registry.register(NodeType.BOT_DISABLE, bot_control)
        registry.register(NodeType.BOT_RESET, bot_control)
        registry.register(NodeType.UPDATE_PIPELINE_STAGE, PipelineStageExecutor())

        logger.debug(f"Registered {len(registry._executors)} node executors")
        return registry
