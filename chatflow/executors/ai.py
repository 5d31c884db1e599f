"""
AI assistant node executor.

Provider calls are delegated to an ``AIResponder``. This executor sends the
reply, maps triggered task ids onto the tasks' output handles and tells the
walker whether the node takes over the session.
"""

import logging
from typing import Any

from chatflow.executors.base import AIResponder, ChannelDispatcher
from chatflow.graph.node import ExecutionContext, NodeSpec

logger = logging.getLogger(__name__)

DEFAULT_STOP_KEYWORD = "stop"
DEFAULT_EXIT_OUTPUT_HANDLE = "ai-stopped"


def enabled_tasks(node: NodeSpec) -> list[dict[str, Any]]:
    """Tasks the assistant may trigger, when task execution is on."""
    if not node.data.get("enableTaskExecution"):
        return []
    return [
        task
        for task in node.data.get("tasks") or []
        if isinstance(task, dict) and task.get("id") and task.get("enabled", True)
    ]


def task_handle(task: dict[str, Any]) -> str:
    return str(task.get("outputHandle") or task["id"])


def task_handles(node: NodeSpec) -> set[str]:
    return {task_handle(task) for task in enabled_tasks(node)}


def takeover_settings(node: NodeSpec) -> dict[str, str] | None:
    """Stop keyword and exit handle when the node takes over the session."""
    if node.data.get("enableSessionTakeover", True) is False:
        return None
    return {
        "stop_keyword": str(node.data.get("stopKeyword") or DEFAULT_STOP_KEYWORD),
        "exit_handle": str(node.data.get("exitOutputHandle") or DEFAULT_EXIT_OUTPUT_HANDLE),
    }


class AIAssistantExecutor:
    """Runs one AI turn for an AI assistant node."""

    def __init__(self, dispatcher: ChannelDispatcher, responder: AIResponder):
        self.dispatcher = dispatcher
        self.responder = responder

    async def execute(
        self,
        node: NodeSpec,
        context: ExecutionContext,
        conversation,
        contact,
        channel_connection,
    ) -> None:
        reply = await self.responder.respond(node, context)

        if reply.text:
            await self.dispatcher.send_message(
                channel_connection, conversation, contact, reply.text
            )
            context.set_variable(node.data.get("responseVariable") or "aiResponse", reply.text)
        for name, value in reply.variables.items():
            context.set_variable(name, value)

        tasks = {str(task["id"]): task for task in enabled_tasks(node)}
        triggered = []
        for task_id in reply.triggered_tasks:
            task = tasks.get(str(task_id))
            if task is None:
                logger.warning(f"AI node '{node.id}' triggered unknown task '{task_id}'")
                continue
            triggered.append(task_handle(task))
        context.triggered_tasks = triggered
        if triggered:
            logger.info(f"🤖 AI node '{node.id}' triggered tasks: {triggered}")

        context.ai_takeover = takeover_settings(node)
