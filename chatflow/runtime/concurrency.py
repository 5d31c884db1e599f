"""
Concurrency Guard - at most one traversal per inbound message.

Channels redeliver webhooks, and a single reply can reach the engine twice
within milliseconds. Three mechanisms keep traversal single-writer:

- MessageDeduplicator: an in-flight set plus one completion signal per
  (conversation_id, message_id). A duplicate waits for the first caller to
  finish, re-checks, and skips. Finished keys are remembered (bounded LRU)
  so late redeliveries skip as well.
- ConversationLocks: one asyncio.Lock per conversation so distinct messages
  of the same conversation are processed strictly in turn. Variable merges
  are last-writer-wins and rely on this.
- TraversalGuard: visited set plus depth counter for one traversal run;
  re-entering a node or exceeding the depth limit raises.
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from chatflow.errors import CycleDetectedError, MaxDepthExceededError

logger = logging.getLogger(__name__)

MessageKey = tuple[Any, str]


class MessageDeduplicator:
    """
    Claims inbound messages so each is processed at most once.

    Example:
        async with dedup.claim(conversation_id, message_id) as first:
            if not first:
                return  # duplicate
            ...process...
    """

    def __init__(self, retention: int = 10000):
        """
        Args:
            retention: How many finished message keys to remember
        """
        self._in_flight: dict[MessageKey, asyncio.Event] = {}
        self._finished: OrderedDict[MessageKey, None] = OrderedDict()
        self._retention = retention

    def is_in_flight(self, conversation_id: Any, message_id: str) -> bool:
        return (conversation_id, message_id) in self._in_flight

    def is_finished(self, conversation_id: Any, message_id: str) -> bool:
        return (conversation_id, message_id) in self._finished

    async def acquire(self, conversation_id: Any, message_id: str | None) -> bool:
        """
        Try to claim a message.

        Returns:
            True if the caller owns processing and must call ``release``;
            False if another caller processed (or is processing) it
        """
        if not message_id:
            return True

        key = (conversation_id, message_id)
        while True:
            if key in self._finished:
                logger.info(f"Skipping already processed message {message_id}")
                return False

            signal = self._in_flight.get(key)
            if signal is None:
                self._in_flight[key] = asyncio.Event()
                return True

            logger.debug(f"Message {message_id} in flight; waiting for first delivery")
            await signal.wait()

    def release(self, conversation_id: Any, message_id: str | None) -> None:
        """Mark a claimed message finished and wake any waiting duplicates."""
        if not message_id:
            return

        key = (conversation_id, message_id)
        self._finished[key] = None
        self._finished.move_to_end(key)
        while len(self._finished) > self._retention:
            self._finished.popitem(last=False)

        signal = self._in_flight.pop(key, None)
        if signal is not None:
            signal.set()

    @asynccontextmanager
    async def claim(self, conversation_id: Any, message_id: str | None) -> AsyncIterator[bool]:
        """Context manager form of acquire/release."""
        owned = await self.acquire(conversation_id, message_id)
        try:
            yield owned
        finally:
            if owned:
                self.release(conversation_id, message_id)


class ConversationLocks:
    """Reference-counted asyncio.Lock per key, discarded when unused."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class TraversalGuard:
    """Cycle and depth protection for one traversal run."""

    max_depth: int = 100
    visited: set[str] = field(default_factory=set)
    path: list[str] = field(default_factory=list)

    @property
    def depth(self) -> int:
        return len(self.path)

    def enter(self, node_id: str) -> None:
        """
        Record a step into node_id.

        Raises:
            CycleDetectedError: node_id was already visited in this run
            MaxDepthExceededError: the run would exceed max_depth steps
        """
        if node_id in self.visited:
            raise CycleDetectedError(node_id, self.path + [node_id])
        if self.depth >= self.max_depth:
            raise MaxDepthExceededError(node_id, self.max_depth)
        self.visited.add(node_id)
        self.path.append(node_id)
