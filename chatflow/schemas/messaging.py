"""
Messaging boundary types.

These describe what the surrounding chat platform hands to the engine for
every inbound message. The engine reads them and mutates only the fields
it owns: the trigger tags on ``InboundMessage`` and ``bot_disabled`` on
``Conversation`` (callers persist the latter).
"""

from typing import Any

from pydantic import BaseModel, Field

from chatflow.schemas.session_state import Identifier

MEDIA_MESSAGE_TYPES = frozenset({"image", "video", "audio", "document", "sticker"})


class InboundMessage(BaseModel):
    """A message received from a contact."""

    id: str | None = Field(default=None, description="Channel message id, used for dedup")
    conversation_id: Identifier
    content: str = ""
    message_type: str = "text"
    media_url: str | None = None
    interactive_reply_id: str | None = Field(
        default=None, description="Id of the tapped button / list row, when the channel sends one"
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Set by the trigger resolver
    matched_keyword: str | None = None
    skip_keyword_evaluation: bool = False

    model_config = {"extra": "allow"}

    @property
    def has_media(self) -> bool:
        return bool(self.media_url) or self.message_type in MEDIA_MESSAGE_TYPES


class Contact(BaseModel):
    """The person on the other side of the conversation."""

    id: Identifier
    name: str = ""
    phone: str | None = None
    email: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


class Conversation(BaseModel):
    """A conversation thread between a contact and a channel connection."""

    id: Identifier
    contact_id: Identifier
    channel_type: str
    channel_connection_id: Identifier | None = None
    company_id: Identifier | None = None
    bot_disabled: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


class ChannelConnection(BaseModel):
    """A configured channel account (a WhatsApp number, an inbox, ...)."""

    id: Identifier
    channel_type: str
    company_id: Identifier | None = None
    name: str = ""

    model_config = {"extra": "allow"}
