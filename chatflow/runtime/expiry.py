"""
Timeout/Expiry Manager - per-session timers plus a periodic sweep.

Every live session has an ``expires_at``. Two mechanisms act on it:

- A timer per session (``loop.call_later``) fires at ``expires_at`` and
  hands the session id to the expiry callback. Renewing a session
  reschedules its timer.
- A sweep task runs every ``sweep_interval`` seconds and expires anything
  whose deadline passed without its timer firing, e.g. sessions hydrated
  after a restart, when their in-memory timers were gone.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from chatflow.schemas.session_state import utc_now

logger = logging.getLogger(__name__)


class ExpiryManager:
    """Owns session timers and the sweep task."""

    def __init__(
        self,
        on_expire: Callable[[str], Awaitable[Any]],
        sweep: Callable[[], Awaitable[Any]] | None = None,
        sweep_interval: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            on_expire: Called with a session id when its timer fires
            sweep: Called every sweep_interval seconds
            sweep_interval: Seconds between sweeps
            clock: Source of "now" for computing timer delays
        """
        self._on_expire = on_expire
        self._sweep = sweep
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._firing: set[asyncio.Task] = set()
        self._sweep_task: asyncio.Task | None = None

    # === TIMERS ===

    def schedule(self, session_id: str, expires_at: datetime | None) -> None:
        """(Re)schedule the timer of a session; None cancels it."""
        self.cancel(session_id)
        if expires_at is None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet: the sweep picks the session up once running
            return

        delay = max((expires_at - self._clock()).total_seconds(), 0.0)
        self._timers[session_id] = loop.call_later(delay, self._fire, session_id)
        logger.debug(f"Session {session_id} expires in {delay:.0f}s")

    def cancel(self, session_id: str) -> bool:
        handle = self._timers.pop(session_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def has_timer(self, session_id: str) -> bool:
        return session_id in self._timers

    @property
    def timer_count(self) -> int:
        return len(self._timers)

    def _fire(self, session_id: str) -> None:
        self._timers.pop(session_id, None)
        task = asyncio.get_running_loop().create_task(self._run_expiry(session_id))
        self._firing.add(task)
        task.add_done_callback(self._firing.discard)

    async def _run_expiry(self, session_id: str) -> None:
        try:
            await self._on_expire(session_id)
        except Exception as e:
            logger.error(f"Failed to expire session {session_id}: {e}")

    # === SWEEP ===

    def start_sweep(self) -> None:
        """Start the periodic sweep (idempotent)."""
        if self._sweep is None or (self._sweep_task and not self._sweep_task.done()):
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
        logger.info(f"Session expiry sweep started (every {self.sweep_interval:.0f}s)")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self._sweep()
            except Exception as e:
                logger.error(f"Session expiry sweep failed: {e}")

    async def stop(self) -> None:
        """Stop the sweep and cancel every pending timer."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self.cancel_all()
        if self._firing:
            await asyncio.gather(*list(self._firing), return_exceptions=True)

    @property
    def is_sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()
