"""
Auto-commit countdown.

A cancellable background task that counts down once per tick and calls
on_fire when it reaches zero. It knows nothing about sessions or
rendering; observers read `remaining` or iterate `subscribe()`.

One instance runs at most once: cancel() is terminal and a fired timer
cannot be re-armed.
"""
import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from enviadores.core.config import settings

logger = logging.getLogger(__name__)


class TimerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CANCELLED = "cancelled"
    FIRED = "fired"


class AutoCommitTimer:
    def __init__(
        self,
        on_fire: Callable[[], Awaitable[None]],
        seconds: Optional[int] = None,
        tick_seconds: Optional[float] = None,
        on_tick: Optional[Callable[[int], None]] = None,
    ):
        self.seconds = seconds or settings.AUTO_COMMIT_SECONDS
        self.tick_seconds = tick_seconds or settings.AUTO_COMMIT_TICK_SECONDS
        self._on_fire = on_fire
        self._on_tick = on_tick

        self.state = TimerState.IDLE
        self._remaining = self.seconds
        self._task: Optional[asyncio.Task] = None
        self._subscribers: List[asyncio.Queue] = []

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def is_running(self) -> bool:
        return self.state == TimerState.RUNNING

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def arm(self) -> None:
        """Start the countdown. Must be called from a running event loop."""
        if self.state != TimerState.IDLE:
            raise RuntimeError(f"Timer cannot be armed from state {self.state.value}")
        self.state = TimerState.RUNNING
        self._publish(self._remaining)
        self._task = asyncio.create_task(self._run())
        logger.info(f"[TIMER] Armed for {self.seconds}s")

    def cancel(self) -> bool:
        """
        Stop the countdown. Returns True if a running countdown was stopped.

        A no-op once the timer has fired, so a commit started by the timer
        is never cancelled by its own disarm call.
        """
        if self.state == TimerState.IDLE:
            self.state = TimerState.CANCELLED
            return False
        if self.state != TimerState.RUNNING:
            return False

        self.state = TimerState.CANCELLED
        if self._task and not self._task.done():
            self._task.cancel()
        self._close_subscribers()
        logger.info(f"[TIMER] Cancelled with {self._remaining}s left")
        return True

    async def _run(self) -> None:
        try:
            while self._remaining > 0:
                await asyncio.sleep(self.tick_seconds)
                if self.state != TimerState.RUNNING:
                    return
                self._remaining -= 1
                self._publish(self._remaining)
        except asyncio.CancelledError:
            return

        self.state = TimerState.FIRED
        self._close_subscribers()
        logger.info("[TIMER] Countdown reached zero, firing")
        try:
            await self._on_fire()
        except Exception as e:
            # The fire handler records its own errors
            logger.error(f"[TIMER] Fire handler failed: {e!r}")

    def _publish(self, remaining: int) -> None:
        if self._on_tick:
            self._on_tick(remaining)
        for queue in self._subscribers:
            queue.put_nowait(remaining)

    def _close_subscribers(self) -> None:
        for queue in self._subscribers:
            queue.put_nowait(None)
        self._subscribers = []

    async def subscribe(self) -> AsyncIterator[int]:
        """Yield the remaining seconds on every tick until the timer stops."""
        if self.state not in (TimerState.IDLE, TimerState.RUNNING):
            return
        queue: asyncio.Queue = asyncio.Queue()
        queue.put_nowait(self._remaining)
        self._subscribers.append(queue)
        while True:
            value = await queue.get()
            if value is None:
                return
            yield value
