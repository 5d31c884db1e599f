"""
Messaging executors: text, media and choice prompts.

Choice nodes (quick reply, buttons, list, poll) send their prompt here;
the walker then suspends the session and the reply is matched in
``chatflow.graph.user_input``.
"""

import logging
from typing import Any

from chatflow.executors.base import ChannelDispatcher
from chatflow.graph.node import ExecutionContext, NodeSpec, NodeType
from chatflow.graph.user_input import selection_options

logger = logging.getLogger(__name__)

MEDIA_NODE_TYPES = {
    NodeType.IMAGE: "image",
    NodeType.VIDEO: "video",
    NodeType.AUDIO: "audio",
    NodeType.DOCUMENT: "document",
}


def _first(data: dict[str, Any], *keys: str, default: str = "") -> str:
    for key in keys:
        value = data.get(key)
        if value:
            return str(value)
    return default


class MessageExecutor:
    """
    Sends a text message.

    Also covers follow-up, CTA URL and location-request nodes, which are
    text messages with an extra interactive element.
    """

    def __init__(self, dispatcher: ChannelDispatcher):
        self.dispatcher = dispatcher

    async def execute(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        conversation,
        contact,
        channel_connection,
    ) -> None:
        data = node.data
        text = context.render(_first(data, "message", "bodyText", "text", "content"))
        options: dict[str, Any] = {}

        if node.type == NodeType.WHATSAPP_CTA_URL:
            options["interactive"] = {
                "type": "cta_url",
                "display_text": context.render(_first(data, "displayText", default="Open")),
                "url": context.render(_first(data, "url")),
                "header": context.render(_first(data, "headerText")),
                "footer": context.render(_first(data, "footerText")),
            }
        elif node.type == NodeType.WHATSAPP_LOCATION_REQUEST:
            options["interactive"] = {"type": "location_request_message"}

        if not text and not options:
            logger.warning(f"Message node '{node.id}' has no content; nothing sent")
            return

        await self.dispatcher.send_message(
            channel_connection, conversation, contact, text, **options
        )
        context.set_variable("lastBotMessage", text)


class MediaExecutor:
    """Sends an image, video, audio clip or document with optional caption."""

    def __init__(self, dispatcher: ChannelDispatcher):
        self.dispatcher = dispatcher

    async def execute(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        conversation,
        contact,
        channel_connection,
    ) -> None:
        media_url = context.render(_first(node.data, "mediaUrl", "url", "fileUrl"))
        if not media_url:
            raise ValueError(f"{node.type} node '{node.id}' has no media URL")

        caption = context.render(_first(node.data, "caption", "message"))
        await self.dispatcher.send_media(
            channel_connection,
            conversation,
            contact,
            MEDIA_NODE_TYPES[node.type],
            media_url,
            caption,
        )


def numbered_menu(prompt: str, labels: list[str]) -> str:
    """Plain-text rendering of a choice prompt for channels without buttons."""
    lines = [prompt] if prompt else []
    lines.extend(f"{i}. {label}" for i, label in enumerate(labels, start=1))
    return "\n".join(lines)


class ChoiceExecutor:
    """
    Sends the prompt of a selection node.

    The dispatcher receives the plain numbered text plus an ``interactive``
    description it can render natively (WhatsApp buttons, list, poll).
    """

    def __init__(self, dispatcher: ChannelDispatcher):
        self.dispatcher = dispatcher

    async def execute(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        conversation,
        contact,
        channel_connection,
    ) -> None:
        data = node.data
        prompt = context.render(
            _first(
                data,
                "message",
                "bodyText",
                "question",
                "pollName",
                default="Please select an option:",
            )
        )
        options = selection_options(node)
        if not options:
            raise ValueError(f"{node.type} node '{node.id}' has no options")

        labels = [context.render(o.label) for o in options]
        interactive: dict[str, Any] = {
            "type": {
                NodeType.QUICK_REPLY: "quick_reply",
                NodeType.WHATSAPP_INTERACTIVE_BUTTONS: "button",
                NodeType.WHATSAPP_INTERACTIVE_LIST: "list",
                NodeType.WHATSAPP_POLL: "poll",
            }[node.type],
            "options": [
                {"id": o.option_id or o.handle, "title": label, "value": o.value}
                for o, label in zip(options, labels, strict=True)
            ],
        }
        if node.type == NodeType.WHATSAPP_INTERACTIVE_LIST:
            interactive["button_text"] = _first(data, "buttonText", default="Options")
        if node.type == NodeType.WHATSAPP_POLL:
            interactive["allow_multiple"] = bool(data.get("allowMultipleAnswers"))
        for part in ("headerText", "footerText"):
            if data.get(part):
                interactive[part.removesuffix("Text")] = context.render(data[part])

        await self.dispatcher.send_message(
            channel_connection,
            conversation,
            contact,
            numbered_menu(prompt, labels),
            interactive=interactive,
        )
        context.set_variable("lastBotMessage", prompt)
