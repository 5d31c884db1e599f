"""Node executors and their registry."""

from chatflow.executors.base import (
    AIReply,
    AIResponder,
    ChannelDispatcher,
    NoOpExecutor,
    PassThroughExecutor,
    Translator,
)
from chatflow.executors.registry import NodeExecutorRegistry

__all__ = [
    "AIReply",
    "AIResponder",
    "ChannelDispatcher",
    "NoOpExecutor",
    "PassThroughExecutor",
    "Translator",
    "NodeExecutorRegistry",
]
