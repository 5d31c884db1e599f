"""
Trigger Resolver - decides whether an inbound message enters a flow.

A trigger node declares which channels it listens on, a condition over the
message, and whether the conversation it starts persists between messages.
Matching is session-aware: while a persistent trigger already owns a live
session for the conversation and contact, every message belongs to that
session and the stateless condition is not consulted.

Condition/channel compatibility (unsupported pairings never match):

    any, contains, exact, starts_with, ends_with,
    regex, multiple_keywords                    -> every channel
    media                                       -> WhatsApp, Messenger, Instagram
    subject_contains, from_domain, has_attachment -> email
"""

import logging
import re
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

from chatflow.config import EngineConfig
from chatflow.graph.node import NodeSpec
from chatflow.graph.user_input import contains_keyword

if TYPE_CHECKING:
    from chatflow.runtime.session_manager import SessionManager
    from chatflow.schemas.messaging import (
        ChannelConnection,
        Contact,
        Conversation,
        InboundMessage,
    )
    from chatflow.schemas.session_state import FlowSessionState

logger = logging.getLogger(__name__)

DEFAULT_HARD_RESET_CONFIRMATION = "Bot has been reactivated. Starting fresh conversation..."

MEDIA_CAPABLE_CHANNELS = frozenset(
    {"whatsapp_unofficial", "whatsapp_official", "whatsapp", "messenger", "instagram"}
)
EMAIL_CHANNELS = frozenset({"email"})

TEXT_CONDITIONS = frozenset(
    {
        "any",
        "contains",
        "exact",
        "equals",
        "starts_with",
        "ends_with",
        "regex",
        "multiple_keywords",
    }
)
MEDIA_CONDITIONS = frozenset({"media"})
EMAIL_CONDITIONS = frozenset({"subject_contains", "from_domain", "has_attachment"})

TIMEOUT_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}


class TriggerConfig(BaseModel):
    """Trigger node configuration as authored in the flow builder."""

    channel_types: list[str] = Field(default_factory=list)
    condition_type: str = "any"
    condition_value: str = ""
    multiple_keywords: str = ""
    keywords_array: list[str] = Field(default_factory=list)
    keywords_case_sensitive: bool = False
    enable_session_persistence: bool = True
    session_timeout: float | None = None
    session_timeout_unit: str | None = None
    hard_reset_keyword: str = ""
    hard_reset_confirmation_message: str = DEFAULT_HARD_RESET_CONFIRMATION

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "ignore",
    }

    @model_validator(mode="before")
    @classmethod
    def _single_channel(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("channelTypes") and data.get("channelType"):
            data = {**data, "channelTypes": [data["channelType"]]}
        return data

    @field_validator("channel_types", "keywords_array", mode="before")
    @classmethod
    def _as_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value else []
        return [str(v) for v in value if v]

    @field_validator("condition_value", "multiple_keywords", "hard_reset_keyword", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("hard_reset_confirmation_message", mode="before")
    @classmethod
    def _confirmation_default(cls, value: Any) -> str:
        return str(value) if value else DEFAULT_HARD_RESET_CONFIRMATION

    @field_validator("enable_session_persistence", "keywords_case_sensitive", mode="before")
    @classmethod
    def _flag(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return info.field_name == "enable_session_persistence"
        return value

    @classmethod
    def from_node(cls, node: NodeSpec) -> "TriggerConfig":
        return cls.model_validate(node.data)

    @property
    def keywords(self) -> list[str]:
        """Declared keywords, from the array field or the comma-separated one."""
        if self.keywords_array:
            return [k.strip() for k in self.keywords_array if k.strip()]
        return [k.strip() for k in self.multiple_keywords.split(",") if k.strip()]

    def session_window(self, config: EngineConfig | None = None) -> timedelta:
        """How long a session may stay idle before it expires."""
        config = config or EngineConfig()
        if not self.enable_session_persistence:
            return timedelta(hours=config.non_persistent_session_hours)

        amount = self.session_timeout
        if amount is None or amount <= 0:
            amount = config.default_session_timeout
        unit = (self.session_timeout_unit or config.default_session_timeout_unit).lower()
        if unit not in TIMEOUT_UNITS:
            logger.warning(f"Unknown session timeout unit '{unit}', using minutes")
            unit = "minutes"
        return TIMEOUT_UNITS[unit] * amount


def condition_supported_on_channel(condition_type: str, channel_type: str) -> bool:
    """The fixed condition/channel compatibility matrix."""
    if condition_type in TEXT_CONDITIONS:
        return True
    if condition_type in MEDIA_CONDITIONS:
        return channel_type in MEDIA_CAPABLE_CHANNELS
    if condition_type in EMAIL_CONDITIONS:
        return channel_type in EMAIL_CHANNELS
    return False


def _sender_domain(message: "InboundMessage") -> str:
    sender = str(message.metadata.get("from") or message.metadata.get("fromEmail") or "")
    match = re.search(r"@([\w.\-]+)", sender)
    return match.group(1).lower() if match else ""


def evaluate_trigger_condition(
    config: TriggerConfig,
    message: "InboundMessage",
    channel_type: str,
) -> bool:
    """
    Stateless trigger condition.

    For ``multiple_keywords`` the first matching keyword (declared order)
    is stored on ``message.matched_keyword``.
    """
    condition = config.condition_type.strip().lower() or "any"
    if not condition_supported_on_channel(condition, channel_type):
        logger.debug(f"Condition '{condition}' not supported on channel '{channel_type}'")
        return False

    content = message.content or ""
    value = config.condition_value
    case_sensitive = config.keywords_case_sensitive

    def fold(text: str) -> str:
        return text if case_sensitive else text.lower()

    if condition == "any":
        return True

    if condition == "contains":
        needles = [v.strip() for v in value.split(",") if v.strip()]
        return any(fold(n) in fold(content) for n in needles)

    if condition in ("exact", "equals"):
        return bool(value) and fold(content.strip()) == fold(value.strip())

    if condition == "starts_with":
        return bool(value) and fold(content.strip()).startswith(fold(value.strip()))

    if condition == "ends_with":
        return bool(value) and fold(content.strip()).endswith(fold(value.strip()))

    if condition == "regex":
        if not value:
            return False
        try:
            flags = 0 if case_sensitive else re.IGNORECASE
            return re.search(value, content, flags) is not None
        except re.error as e:
            logger.warning(f"Invalid trigger regex '{value}': {e}")
            return False

    if condition == "multiple_keywords":
        for keyword in config.keywords:
            if contains_keyword(content, keyword, case_sensitive):
                message.matched_keyword = keyword
                return True
        return False

    if condition == "media":
        return message.has_media

    if condition == "subject_contains":
        subject = str(message.metadata.get("subject") or "")
        return bool(value) and fold(value) in fold(subject)

    if condition == "from_domain":
        domain = value.strip().lstrip("@").lower()
        return bool(domain) and _sender_domain(message) == domain

    if condition == "has_attachment":
        return bool(message.metadata.get("attachments")) or message.has_media

    return False


def is_hard_reset(config: TriggerConfig, message: "InboundMessage") -> bool:
    keyword = config.hard_reset_keyword.strip()
    return bool(keyword) and (message.content or "").strip().lower() == keyword.lower()


class TriggerResolver:
    """Session-aware trigger matching."""

    def __init__(self, session_manager: "SessionManager"):
        self.session_manager = session_manager

    async def matches_trigger_with_session(
        self,
        trigger_node: NodeSpec,
        message: "InboundMessage",
        conversation: "Conversation",
        contact: "Contact",
        channel_connection: "ChannelConnection",
    ) -> bool:
        """
        Whether a message enters (or continues) the trigger's flow.

        1. Channel outside the trigger's channel set: no match
        2. Persistent trigger with a live session for this conversation and
           contact: match, and the message is tagged so keyword evaluation
           is skipped downstream
        3. Otherwise: the stateless condition decides
        """
        config = TriggerConfig.from_node(trigger_node)
        channel_type = channel_connection.channel_type

        if config.channel_types and channel_type not in config.channel_types:
            return False

        if config.enable_session_persistence:
            session = await self.find_reusable_session(trigger_node, conversation, contact)
            if session is not None:
                message.skip_keyword_evaluation = True
                logger.debug(
                    f"Trigger {trigger_node.id} reuses session {session.session_id}"
                )
                return True

        return evaluate_trigger_condition(config, message, channel_type)

    async def find_reusable_session(
        self,
        trigger_node: NodeSpec,
        conversation: "Conversation",
        contact: "Contact",
    ) -> "FlowSessionState | None":
        """The live session a persistent trigger would continue, if any."""
        config = TriggerConfig.from_node(trigger_node)
        if not config.enable_session_persistence:
            return None
        return await self.session_manager.find_live_session(
            trigger_node.id, conversation.id, contact.id
        )

    def should_skip_keyword_evaluation(self, message: "InboundMessage") -> bool:
        return message.skip_keyword_evaluation
