"""
Upstream admission queue.

The upstream platform bans by account and IP, not by request, so every
outbound call in the process shares one strictly FIFO queue. Grants are
spaced by a baseline interval; while a slowdown window is active the spacing
is the elevated interval, which doubles on each slowdown up to a cap and only
returns to its floor through ``reset_speed``.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Deque, Dict, Optional

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass
class RateLimitTicket:
    """A caller waiting for its turn."""
    caller_id: str
    enqueued_at: float
    future: "asyncio.Future[None]" = field(repr=False)


class UpstreamRateLimiter:
    """Single FIFO admission queue for upstream calls."""

    def __init__(
        self,
        min_interval: float = 1.0,
        slowdown_floor: float = 5.0,
        slowdown_cap: float = 30.0,
        slowdown_duration: float = 60.0,
        *,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.min_interval = min_interval
        self.slowdown_floor = slowdown_floor
        self.slowdown_cap = slowdown_cap
        self.slowdown_duration = slowdown_duration
        self.slowdown_interval = slowdown_floor
        self.metrics = metrics
        self.logger = get_logger("broker.rate_limiter")

        self._queue: Deque[RateLimitTicket] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._last_grant: Optional[float] = None
        self._slowdown_until = 0.0

    async def enqueue(self, caller_id: Any) -> None:
        """Wait until this caller may start its upstream call.

        Cancelling the waiting caller before its grant removes it from the
        queue without consuming a turn.
        """
        loop = asyncio.get_running_loop()
        ticket = RateLimitTicket(
            caller_id=str(caller_id),
            enqueued_at=time.monotonic(),
            future=loop.create_future(),
        )
        self._queue.append(ticket)
        self._report_depth()
        self._ensure_draining(loop)
        await ticket.future

    def slowdown(self, duration_seconds: Optional[float] = None) -> None:
        """Switch to the elevated interval for ``duration_seconds`` and escalate it.

        Defaults to the configured ``slowdown_duration``.
        """
        if duration_seconds is None:
            duration_seconds = self.slowdown_duration
        self._slowdown_until = time.monotonic() + duration_seconds
        self.slowdown_interval = min(self.slowdown_interval * 2, self.slowdown_cap)
        self.logger.warning(
            "Upstream slowdown activated",
            duration_seconds=duration_seconds,
            interval_seconds=self.slowdown_interval,
        )
        if self.metrics:
            self.metrics.increment_counter("rate_limit_slowdowns_total")

    def reset_speed(self) -> None:
        """Return the elevated interval to its floor."""
        self.slowdown_interval = self.slowdown_floor
        self.logger.info("Upstream slowdown interval reset", interval_seconds=self.slowdown_interval)

    @property
    def slowed_down(self) -> bool:
        return time.monotonic() < self._slowdown_until

    @property
    def current_interval(self) -> float:
        return self.slowdown_interval if self.slowed_down else self.min_interval

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def snapshot(self) -> Dict[str, Any]:
        """Current limiter state for status endpoints."""
        now = time.monotonic()
        return {
            "queue_length": len(self._queue),
            "min_interval_seconds": self.min_interval,
            "slowdown_interval_seconds": self.slowdown_interval,
            "slowdown_active": now < self._slowdown_until,
            "slowdown_remaining_seconds": round(max(0.0, self._slowdown_until - now), 3),
            "current_interval_seconds": self.current_interval,
        }

    async def close(self) -> None:
        """Stop draining and release every waiter."""
        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None
        while self._queue:
            ticket = self._queue.popleft()
            if not ticket.future.done():
                ticket.future.cancel()
        self._report_depth()

    def _ensure_draining(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = loop.create_task(self._drain())

    def _remaining_delay(self) -> float:
        if self._last_grant is None:
            return 0.0
        elapsed = time.monotonic() - self._last_grant
        return self.current_interval - elapsed

    async def _drain(self) -> None:
        try:
            while self._queue:
                ticket = self._queue[0]
                if ticket.future.done():
                    # Caller gave up before its turn
                    self._queue.popleft()
                    self._report_depth()
                    continue

                delay = self._remaining_delay()
                if delay > 0:
                    await asyncio.sleep(delay)
                    continue

                self._queue.popleft()
                self._last_grant = time.monotonic()
                ticket.future.set_result(None)
                self._report_depth()
                if self.metrics:
                    self.metrics.observe_histogram("rate_limit_wait_seconds", self._last_grant - ticket.enqueued_at)
        finally:
            self._drain_task = None

    def _report_depth(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("rate_limit_queue_depth", len(self._queue))
