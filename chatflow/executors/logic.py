"""
Logic and control executors: conditions, waits, input prompts, variable
assignment, translation, bot control and pipeline stages.
"""

import asyncio
import logging
import re
from datetime import UTC, datetime
from typing import Any

from chatflow.executors.base import ChannelDispatcher, Translator
from chatflow.graph.conditions import evaluate_condition_node
from chatflow.graph.node import ExecutionContext, NodeSpec, NodeType
from chatflow.utils.templating import lookup_variable

logger = logging.getLogger(__name__)

_SECONDS_PER_UNIT = {
    "second": 1,
    "seconds": 1,
    "minute": 60,
    "minutes": 60,
    "hour": 3600,
    "hours": 3600,
}


class ConditionExecutor:
    """Evaluates the condition predicate and records the result for routing."""

    def __init__(self, clock=None):
        self.clock = clock or (lambda: datetime.now(UTC))

    async def execute(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        conversation,
        contact,
        channel_connection,
    ) -> None:
        result = evaluate_condition_node(
            node.data, context.message, context.variables, contact, self.clock()
        )
        context.condition_result = result
        context.set_variable("conditionResult", result)
        logger.debug(f"Condition '{node.id}' evaluated to {result}")


def wait_seconds(data: dict[str, Any]) -> float:
    """Delay configured on a wait node, in seconds."""
    raw = data.get("timeValue", data.get("duration", data.get("delay", 0)))
    try:
        amount = float(raw)
    except (TypeError, ValueError):
        amount = 0.0
    unit = str(data.get("timeUnit") or data.get("unit") or "seconds").lower()
    return max(amount, 0.0) * _SECONDS_PER_UNIT.get(unit, 1)


class WaitExecutor:
    """Pauses this conversation's traversal; other conversations keep running."""

    def __init__(self, sleep=asyncio.sleep):
        self.sleep = sleep

    async def execute(self, node, context, conversation, contact, channel_connection) -> None:
        delay = wait_seconds(node.data)
        if delay:
            logger.info(f"⏳ Wait node '{node.id}' sleeping {delay:.0f}s")
            await self.sleep(delay)


class InputExecutor:
    """Sends the input prompt; the reply is captured when the session resumes."""

    def __init__(self, dispatcher: ChannelDispatcher):
        self.dispatcher = dispatcher

    async def execute(self, node, context, conversation, contact, channel_connection) -> None:
        prompt = context.render(
            node.data.get("message") or node.data.get("question") or node.data.get("prompt")
        )
        if prompt:
            await self.dispatcher.send_message(channel_connection, conversation, contact, prompt)
            context.set_variable("lastBotMessage", prompt)


class ActionExecutor:
    """
    Applies variable operations.

    Supported ``actions`` entries: ``set_variable`` (default), ``increment``,
    ``append`` and ``clear``. A single ``variableName`` / ``value`` pair on the
    node data is treated as one ``set_variable``.
    """

    async def execute(self, node, context, conversation, contact, channel_connection) -> None:
        actions = node.data.get("actions")
        if not actions and node.data.get("variableName"):
            actions = [
                {
                    "type": "set_variable",
                    "variable": node.data["variableName"],
                    "value": node.data.get("value"),
                }
            ]

        for action in actions or []:
            if not isinstance(action, dict):
                continue
            name = action.get("variable") or action.get("variableName")
            if not name:
                logger.warning(f"Action on node '{node.id}' has no variable name: {action}")
                continue
            kind = action.get("type") or "set_variable"
            current = context.get_variable(name)

            if kind == "increment":
                step = float(context.render_value(action.get("value", 1)) or 1)
                total = float(current or 0) + step
                context.set_variable(name, int(total) if total.is_integer() else total)
            elif kind == "append":
                items = list(current) if isinstance(current, list) else []
                items.append(context.render_value(action.get("value")))
                context.set_variable(name, items)
            elif kind == "clear":
                context.set_variable(name, None)
            else:
                context.set_variable(name, context.render_value(action.get("value")))


class DataCaptureExecutor:
    """
    Copies values from the message, contact or existing variables.

    Each capture is ``{variableName, source, field?, pattern?}`` where
    ``source`` is ``message`` (default), ``contact`` or ``variable``; an
    optional regex ``pattern`` extracts its first group (or whole match).
    """

    async def execute(self, node, context, conversation, contact, channel_connection) -> None:
        captures = node.data.get("captures") or node.data.get("fields") or []
        for capture in captures:
            if not isinstance(capture, dict) or not capture.get("variableName"):
                continue
            source = capture.get("source") or "message"
            if source == "contact":
                value = getattr(contact, capture.get("field") or "name", None)
                if value is None:
                    value = contact.attributes.get(capture.get("field"))
            elif source == "variable":
                value = lookup_variable(context.variables, capture.get("field") or "")
            else:
                value = context.message.content

            pattern = capture.get("pattern")
            if pattern and value is not None:
                try:
                    found = re.search(pattern, str(value))
                except re.error as e:
                    logger.warning(f"Invalid capture pattern '{pattern}' on '{node.id}': {e}")
                    found = None
                value = (found.group(1) if found.groups() else found.group(0)) if found else None

            context.set_variable(capture["variableName"], value)


class TranslationExecutor:
    """Translates text into a variable; copies it unchanged without a translator."""

    def __init__(self, translator: Translator | None = None):
        self.translator = translator

    async def execute(self, node, context, conversation, contact, channel_connection) -> None:
        text = context.render(node.data.get("text") or "{{message.content}}")
        target = node.data.get("targetLanguage") or "en"
        output = node.data.get("outputVariable") or "translatedText"

        if self.translator is None:
            logger.debug(f"No translator configured; '{node.id}' passes text through")
            context.set_variable(output, text)
            return
        context.set_variable(output, await self.translator.translate(text, target))


class BotControlExecutor:
    """Disables the bot (agent handoff) or re-enables it for the conversation."""

    def __init__(self, dispatcher: ChannelDispatcher):
        self.dispatcher = dispatcher

    async def execute(self, node, context, conversation, contact, channel_connection) -> None:
        disable = node.type == NodeType.BOT_DISABLE
        conversation.bot_disabled = disable
        context.set_variable("botDisabled", disable)
        action = "🛑 Bot disabled" if disable else "🔄 Bot re-enabled"
        logger.info(f"{action} for conversation {conversation.id}")

        message = context.render(node.data.get("message") or node.data.get("handoffMessage"))
        if message:
            await self.dispatcher.send_message(channel_connection, conversation, contact, message)


class PipelineStageExecutor:
    """Records the pipeline stage the contact is moved to."""

    async def execute(self, node, context, conversation, contact, channel_connection) -> None:
        stage = node.data.get("stageId") or node.data.get("stage")
        if not stage:
            raise ValueError(f"Pipeline node '{node.id}' has no stage configured")
        context.set_variable("pipelineStage", stage)
        if node.data.get("stageName"):
            context.set_variable("pipelineStageName", node.data["stageName"])
        if node.data.get("pipelineId"):
            context.set_variable("pipelineId", node.data["pipelineId"])
