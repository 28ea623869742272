"""
Crowd Count — Dispatch Scheduler
================================

Admission control for the live path.  Every producer goes through
``submit``; at most ``concurrency_limit`` frames are in flight against the
inference service, up to ``capacity_limit`` more wait in a FIFO, and the
rest are dropped on the spot with :class:`CapacityError`.

All state changes (admit, complete, alert check) happen synchronously on
the event loop with no ``await`` in between, so a completion that frees a
slot always hands it to the oldest pending frame before any new ``submit``
can observe the counters.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from errors import CapacityError

log = logging.getLogger(__name__)


@dataclass
class FrameJob:
    source_bytes: bytes
    submitter: Any = None
    submitted_at: float = field(default_factory=time.monotonic)


class Admission(str, Enum):
    ADMITTED = "admitted"
    QUEUED = "queued"


# =====================================================================
#  ALERTS
# =====================================================================

class AlertState:
    """Threshold + cooldown.  Fires when ``count >= threshold`` and the last
    alert is older than ``cooldown_seconds``."""

    def __init__(self, threshold: int = 5, cooldown_seconds: float = 300.0,
                 clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self.last_alert_at: Optional[float] = None
        self._clock = clock
        self._lock = threading.Lock()

    def evaluate(self, count: int) -> bool:
        with self._lock:
            if count < self.threshold:
                return False
            now = self._clock()
            if self.last_alert_at is not None and now - self.last_alert_at <= self.cooldown_seconds:
                return False
            self.last_alert_at = now
            return True


# =====================================================================
#  SCHEDULER
# =====================================================================

FrameHandler = Callable[[FrameJob], Awaitable[Optional[int]]]


class DispatchScheduler:
    """Bounded-concurrency FIFO dispatcher for live frames.

    ``handler`` runs one admitted job end to end (inference, rendering,
    delivery) and returns the detected count, or ``None`` if the frame
    failed.  The scheduler only owns admission and the alert state.
    """

    def __init__(
        self,
        handler: FrameHandler,
        *,
        concurrency_limit: int = 2,
        capacity_limit: int = 60,
        alerts: AlertState | None = None,
        on_alert: Callable[[int, int], None] | None = None,
    ):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        if capacity_limit < 0:
            raise ValueError("capacity_limit must be >= 0")
        self._handler = handler
        self.concurrency_limit = concurrency_limit
        self.capacity_limit = capacity_limit
        self.alerts = alerts or AlertState()
        self._on_alert = on_alert

        self.in_flight = 0
        self.pending: deque[FrameJob] = deque()
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def threshold(self) -> int:
        return self.alerts.threshold

    def update_threshold(self, threshold: int) -> int:
        self.alerts.threshold = int(threshold)
        log.info("Threshold updated to %d", self.alerts.threshold)
        return self.alerts.threshold

    def record_count(self, count: int) -> bool:
        """Run the alert transition for one completed frame."""
        fired = self.alerts.evaluate(count)
        if fired:
            log.warning("ALERT: Threshold exceeded (%d people)", count)
            if self._on_alert:
                try:
                    self._on_alert(count, self.alerts.threshold)
                except Exception as e:
                    log.error("Alert callback failed: %s", e, exc_info=True)
        return fired

    # ------------------------------------------------------------------
    #  Admission
    # ------------------------------------------------------------------

    def submit(self, job: FrameJob) -> Admission:
        """Admit, queue, or reject a frame.  Must be called on the event loop.

        Raises:
            CapacityError: the pending queue already holds ``capacity_limit``
                frames.  Nothing is queued and nothing will be delivered.
        """
        if self.in_flight < self.concurrency_limit:
            self._admit(job)
            return Admission.ADMITTED
        if len(self.pending) >= self.capacity_limit:
            log.warning("Queue full (%d pending), frame dropped", len(self.pending))
            raise CapacityError()
        self.pending.append(job)
        self._idle.clear()
        return Admission.QUEUED

    def _admit(self, job: FrameJob):
        self.in_flight += 1
        self._idle.clear()
        task = asyncio.get_running_loop().create_task(self._run(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: FrameJob):
        try:
            count = await self._handler(job)
            if count is not None:
                self.record_count(count)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Frame handler failed: %s", e, exc_info=True)
        finally:
            self._complete()

    def _complete(self):
        self.in_flight -= 1
        while self.pending and self.in_flight < self.concurrency_limit:
            self._admit(self.pending.popleft())
        if self.in_flight == 0 and not self.pending:
            self._idle.set()

    # ------------------------------------------------------------------
    #  Lifecycle
    # ------------------------------------------------------------------

    async def wait_idle(self):
        """Block until nothing is in flight or pending."""
        await self._idle.wait()

    async def shutdown(self):
        """Drop pending frames and cancel whatever is still running."""
        dropped = len(self.pending)
        self.pending.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if dropped:
            log.info("Scheduler shut down, %d pending frame(s) dropped", dropped)

    def stats(self) -> dict:
        return {
            "in_flight": self.in_flight,
            "pending": len(self.pending),
            "concurrency_limit": self.concurrency_limit,
            "capacity_limit": self.capacity_limit,
            "threshold": self.alerts.threshold,
        }
