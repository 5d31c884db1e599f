"""
Node Protocol - the typed building blocks of a flow.

A flow node is authored in the visual builder as ``{id, type, data}``. The
``type`` string has changed over the builder's lifetime ("messageNode",
"Quick Reply Node", "quickReply", ...); ``normalize_node_type`` maps every
historical spelling onto the closed ``NodeType`` enum, so routing code only
ever deals with enum members.

Executors implement the ``NodeExecutor`` protocol and receive an
``ExecutionContext`` carrying the session variables and the inbound message.
"""

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, Field

from chatflow.errors import FlowDefinitionError
from chatflow.utils.templating import render_template, render_value

if TYPE_CHECKING:
    from chatflow.schemas.messaging import (
        ChannelConnection,
        Contact,
        Conversation,
        InboundMessage,
    )


class NodeType(StrEnum):
    """Every node type the engine can route."""

    # Messaging
    MESSAGE = "message"
    QUICK_REPLY = "quickReply"
    WHATSAPP_INTERACTIVE_BUTTONS = "whatsappInteractiveButtons"
    WHATSAPP_INTERACTIVE_LIST = "whatsappInteractiveList"
    WHATSAPP_CTA_URL = "whatsappCTAURL"
    WHATSAPP_LOCATION_REQUEST = "whatsappLocationRequest"
    WHATSAPP_POLL = "whatsappPoll"
    FOLLOW_UP = "followUp"

    # Media
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"

    # Logic
    CONDITION = "condition"
    WAIT = "wait"
    INPUT = "input"
    ACTION = "action"
    TRANSLATION = "translation"
    CODE_EXECUTION = "codeExecution"
    DATA_CAPTURE = "data_capture"

    # Integrations
    AI_ASSISTANT = "aiAssistant"
    WEBHOOK = "webhook"
    HTTP_REQUEST = "httpRequest"
    SHOPIFY = "shopify"
    WOOCOMMERCE = "woocommerce"
    WHATSAPP_FLOWS = "whatsappFlows"
    TYPEBOT = "typebot"
    FLOWISE = "flowise"
    N8N = "n8n"
    MAKE = "make"
    GOOGLE_SHEETS = "google_sheets"
    DOCUMIND = "documind"
    CHAT_PDF = "chat_pdf"
    GOOGLE_CALENDAR = "googleCalendar"

    # Bot control
    BOT_DISABLE = "botDisable"
    BOT_RESET = "botReset"
    UPDATE_PIPELINE_STAGE = "updatePipelineStage"

    TRIGGER = "trigger"


class NodeCategory(StrEnum):
    """Grouping used by validation and the CLI."""

    MESSAGE = "message"
    MEDIA = "media"
    LOGIC = "logic"
    INTEGRATION = "integration"
    ECOMMERCE = "ecommerce"
    EXTERNAL = "external"
    CALENDAR = "calendar"
    BOT_CONTROL = "bot_control"
    PIPELINE = "pipeline"
    TRIGGER = "trigger"


NODE_TYPE_CATEGORIES: dict[NodeType, NodeCategory] = {
    NodeType.MESSAGE: NodeCategory.MESSAGE,
    NodeType.QUICK_REPLY: NodeCategory.MESSAGE,
    NodeType.WHATSAPP_INTERACTIVE_BUTTONS: NodeCategory.MESSAGE,
    NodeType.WHATSAPP_INTERACTIVE_LIST: NodeCategory.MESSAGE,
    NodeType.WHATSAPP_CTA_URL: NodeCategory.MESSAGE,
    NodeType.WHATSAPP_LOCATION_REQUEST: NodeCategory.MESSAGE,
    NodeType.WHATSAPP_POLL: NodeCategory.MESSAGE,
    NodeType.WHATSAPP_FLOWS: NodeCategory.MESSAGE,
    NodeType.FOLLOW_UP: NodeCategory.MESSAGE,
    NodeType.IMAGE: NodeCategory.MEDIA,
    NodeType.VIDEO: NodeCategory.MEDIA,
    NodeType.AUDIO: NodeCategory.MEDIA,
    NodeType.DOCUMENT: NodeCategory.MEDIA,
    NodeType.CONDITION: NodeCategory.LOGIC,
    NodeType.WAIT: NodeCategory.LOGIC,
    NodeType.INPUT: NodeCategory.LOGIC,
    NodeType.ACTION: NodeCategory.LOGIC,
    NodeType.TRANSLATION: NodeCategory.LOGIC,
    NodeType.CODE_EXECUTION: NodeCategory.LOGIC,
    NodeType.DATA_CAPTURE: NodeCategory.LOGIC,
    NodeType.AI_ASSISTANT: NodeCategory.INTEGRATION,
    NodeType.WEBHOOK: NodeCategory.INTEGRATION,
    NodeType.HTTP_REQUEST: NodeCategory.INTEGRATION,
    NodeType.SHOPIFY: NodeCategory.ECOMMERCE,
    NodeType.WOOCOMMERCE: NodeCategory.ECOMMERCE,
    NodeType.TYPEBOT: NodeCategory.EXTERNAL,
    NodeType.FLOWISE: NodeCategory.EXTERNAL,
    NodeType.N8N: NodeCategory.EXTERNAL,
    NodeType.MAKE: NodeCategory.EXTERNAL,
    NodeType.GOOGLE_SHEETS: NodeCategory.EXTERNAL,
    NodeType.DOCUMIND: NodeCategory.EXTERNAL,
    NodeType.CHAT_PDF: NodeCategory.EXTERNAL,
    NodeType.GOOGLE_CALENDAR: NodeCategory.CALENDAR,
    NodeType.BOT_DISABLE: NodeCategory.BOT_CONTROL,
    NodeType.BOT_RESET: NodeCategory.BOT_CONTROL,
    NodeType.UPDATE_PIPELINE_STAGE: NodeCategory.PIPELINE,
    NodeType.TRIGGER: NodeCategory.TRIGGER,
}

# Builder labels that cannot be derived from the enum value
_LABEL_ALIASES: dict[str, NodeType] = {
    "Quick Reply Options": NodeType.QUICK_REPLY,
    "Follow-up Node": NodeType.FOLLOW_UP,
    "AI Assistant": NodeType.AI_ASSISTANT,
    "AI Response": NodeType.AI_ASSISTANT,
    "HTTP Request Node": NodeType.HTTP_REQUEST,
    "WooCommerce Node": NodeType.WOOCOMMERCE,
    "WhatsApp CTA URL": NodeType.WHATSAPP_CTA_URL,
    "WhatsApp CTA URL Node": NodeType.WHATSAPP_CTA_URL,
    "whatsapp_cta_url": NodeType.WHATSAPP_CTA_URL,
    "Agent Handoff": NodeType.BOT_DISABLE,
    "Bot Disable": NodeType.BOT_DISABLE,
    "Disable Bot": NodeType.BOT_DISABLE,
    "Reset Bot": NodeType.BOT_RESET,
    "Bot Reset": NodeType.BOT_RESET,
    "Re-enable Bot": NodeType.BOT_RESET,
    "Pipeline": NodeType.UPDATE_PIPELINE_STAGE,
    "Move to Pipeline Stage": NodeType.UPDATE_PIPELINE_STAGE,
}


def _snake_case(value: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", value).lower()


def _title_label(value: str) -> str:
    words = _snake_case(value).split("_")
    return " ".join(w.capitalize() for w in words)


def _build_alias_table() -> dict[str, NodeType]:
    """Every historical spelling of each node type, keyed case-insensitively."""
    table: dict[str, NodeType] = {}
    for node_type in NodeType:
        value = node_type.value
        label = _title_label(value)
        for alias in (
            value,
            f"{value}Node",
            _snake_case(value),
            _snake_case(value).replace("_", ""),
            label,
            f"{label} Node",
        ):
            table.setdefault(alias.lower(), node_type)
    for alias, node_type in _LABEL_ALIASES.items():
        table[alias.lower()] = node_type
    return table


NODE_TYPE_ALIASES = _build_alias_table()


def normalize_node_type(raw_type: str | None, label: str | None = None) -> NodeType | None:
    """
    Map a builder type string (or, failing that, its label) onto NodeType.

    Returns None when neither spelling is known.
    """
    for candidate in (raw_type, label):
        if not candidate:
            continue
        if candidate in NodeType._value2member_map_:
            return NodeType(candidate)
        node_type = NODE_TYPE_ALIASES.get(candidate.strip().lower())
        if node_type is not None:
            return node_type
    return None


# Choice nodes: the reply is matched against numbered options
SELECTION_NODE_TYPES = frozenset(
    {
        NodeType.QUICK_REPLY,
        NodeType.WHATSAPP_INTERACTIVE_BUTTONS,
        NodeType.WHATSAPP_INTERACTIVE_LIST,
        NodeType.WHATSAPP_POLL,
    }
)

# Message/media nodes that can optionally wait for a keyword reply
KEYWORD_CAPABLE_NODE_TYPES = frozenset(
    {
        NodeType.MESSAGE,
        NodeType.IMAGE,
        NodeType.VIDEO,
        NodeType.AUDIO,
        NodeType.DOCUMENT,
    }
)

ALWAYS_WAITING_NODE_TYPES = SELECTION_NODE_TYPES | {NodeType.INPUT}

STOPS_EXECUTION_NODE_TYPES = frozenset({NodeType.BOT_DISABLE})

# Edge handles of choice nodes
INVALID_RESPONSE_HANDLE = "invalid-response"
GO_BACK_HANDLE = "go-back"
NO_MATCH_HANDLE = "no-match"


def keyword_handle(value: str) -> str:
    """
    Edge handle for a keyword: lowercase, whitespace runs become hyphens.

    ``keyword_handle("Talk To Sales")`` -> ``"keyword-talk-to-sales"``
    """
    return "keyword-" + re.sub(r"\s+", "-", value.strip().lower())


def option_handle(index: int) -> str:
    """Edge handle for the zero-based option index of a choice node."""
    return f"option-{index + 1}"


class NodeSpec(BaseModel):
    """
    A node of a flow graph.

    ``data`` holds the builder configuration untouched; helpers below read
    the fields the engine itself cares about.
    """

    id: str
    type: NodeType
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "NodeSpec":
        """Parse a builder node dict, normalizing legacy type spellings."""
        if not isinstance(raw, dict) or "id" not in raw:
            raise FlowDefinitionError(f"Node definition without an id: {raw!r}")

        data = raw.get("data") or {}
        if not isinstance(data, dict):
            data = {}
        node_type = normalize_node_type(raw.get("type"), data.get("label"))
        if node_type is None:
            raise FlowDefinitionError(
                f"Node '{raw['id']}' has unknown type '{raw.get('type')}'"
                f" (label '{data.get('label')}')"
            )
        return cls(id=str(raw["id"]), type=node_type, data=data)

    @property
    def label(self) -> str:
        return str(self.data.get("label") or self.id)

    @property
    def category(self) -> NodeCategory:
        return NODE_TYPE_CATEGORIES[self.type]

    @property
    def keywords(self) -> list[dict[str, Any]]:
        """Configured keyword entries (``{text, value, caseSensitive}``) of message/media nodes."""
        raw = self.data.get("keywords") or []
        return [k for k in raw if isinstance(k, dict) and (k.get("value") or k.get("text"))]

    @property
    def keyword_triggers_enabled(self) -> bool:
        return (
            self.type in KEYWORD_CAPABLE_NODE_TYPES
            and bool(self.data.get("enableKeywordTriggers"))
            and bool(self.keywords)
        )

    @property
    def stops_execution(self) -> bool:
        return self.type in STOPS_EXECUTION_NODE_TYPES


def requires_user_input(node: NodeSpec) -> bool:
    """Whether traversal suspends at this node until the contact replies."""
    if node.type in ALWAYS_WAITING_NODE_TYPES:
        return True
    return node.keyword_triggers_enabled


@dataclass
class ExecutionContext:
    """
    Everything an executor may read or write while running one node.

    ``variables`` starts as a copy of the session variables plus system
    variables describing the inbound message; whatever the executor leaves
    in it is merged back into the session after the node runs.
    """

    session_id: str
    flow_id: Any
    message: "InboundMessage"
    conversation: "Conversation"
    contact: "Contact"
    channel_connection: "ChannelConnection"
    variables: dict[str, Any] = field(default_factory=dict)

    # Routing facts produced by resume matching or by executors
    selection: dict[str, Any] | None = None
    condition_result: bool | None = None
    triggered_tasks: list[str] = field(default_factory=list)
    ai_takeover: dict[str, Any] | None = None

    def get_variable(self, name: str, default: Any = None) -> Any:
        return self.variables.get(name, default)

    def set_variable(self, name: str, value: Any) -> None:
        self.variables[name] = value

    def render(self, text: str | None) -> str:
        """Interpolate ``{{variable}}`` placeholders."""
        return render_template(text, self.variables)

    def render_value(self, value: Any) -> Any:
        return render_value(value, self.variables)


class NodeExecutor(Protocol):
    """Contract every node executor implements."""

    async def execute(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        conversation: "Conversation",
        contact: "Contact",
        channel_connection: "ChannelConnection",
    ) -> None: ...
