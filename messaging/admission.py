"""
Admission Gate - Bounded Concurrency for Reply Generation

Caps how many generation jobs run at once. Jobs beyond the limit wait in a
FIFO queue, so bursts show up as latency instead of unbounded load on the
generator API.

The limit can be changed at runtime. Lowering it never cancels running
jobs, it only delays future admissions; raising it admits queued jobs
immediately.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional
from dataclasses import dataclass

log = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class AdmissionTicket:
    """One held slot of the gate."""
    holder: str
    acquired_at: float


@dataclass
class _PendingJob:
    factory: TaskFactory
    holder: str


class AdmissionGate:
    """
    FIFO dispatcher with a runtime-adjustable concurrency limit.

    Example:
        gate = AdmissionGate(concurrency=4, min_concurrency=1, max_concurrency=20)
        gate.submit(lambda: generate_reply(chat_id), holder=chat_id)
        gate.set_concurrency(8)
        print(gate.status())
    """

    def __init__(
        self,
        concurrency: int = 4,
        min_concurrency: int = 1,
        max_concurrency: int = 20,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the admission gate.

        Args:
            concurrency: Initial limit (clamped to the bounds)
            min_concurrency: Lowest allowed limit
            max_concurrency: Highest allowed limit
            clock: Time source for ticket timestamps
        """
        if min_concurrency < 1:
            raise ValueError("min_concurrency must be at least 1")
        if max_concurrency < min_concurrency:
            raise ValueError("max_concurrency must not be below min_concurrency")

        self._min = min_concurrency
        self._max = max_concurrency
        self._concurrency = self._clamp(concurrency)
        self._clock = clock

        self._queue: Deque[_PendingJob] = deque()
        self._tickets: Dict[asyncio.Task, AdmissionTicket] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

        log.debug(
            "AdmissionGate initialized (concurrency=%d, bounds=[%d, %d])",
            self._concurrency, self._min, self._max
        )

    def _clamp(self, value: int) -> int:
        return max(self._min, min(self._max, int(value)))

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def outstanding(self) -> int:
        return len(self._tickets)

    @property
    def queued(self) -> int:
        return len(self._queue)

    def submit(self, task: TaskFactory, holder: str = "anonymous") -> bool:
        """
        Run a job now if a slot is free, otherwise queue it.

        Args:
            task: Zero-argument callable returning an awaitable
            holder: Identity recorded on the ticket (usually the conversation ID)

        Returns:
            True if the job was admitted immediately, False if it was queued

        Raises:
            RuntimeError: If the gate has been closed
        """
        if self._closed:
            raise RuntimeError("AdmissionGate is closed")

        job = _PendingJob(factory=task, holder=holder)
        self._idle.clear()

        if not self._queue and self.outstanding < self._concurrency:
            self._admit(job)
            return True

        self._queue.append(job)
        log.debug(
            "Queued job for %s (outstanding=%d, queued=%d, limit=%d)",
            holder, self.outstanding, len(self._queue), self._concurrency
        )
        return False

    def _admit(self, job: _PendingJob) -> None:
        ticket = AdmissionTicket(holder=job.holder, acquired_at=self._clock())
        runner = asyncio.get_running_loop().create_task(self._run(job))
        self._tickets[runner] = ticket

    async def _run(self, job: _PendingJob) -> None:
        try:
            await job.factory()
        except Exception:
            log.exception("Admitted job for %s failed", job.holder)
        finally:
            self._release(asyncio.current_task())

    def _release(self, runner: Optional[asyncio.Task]) -> None:
        """Give a slot back and admit whatever fits."""
        self._tickets.pop(runner, None)
        self._drain()
        if not self._tickets and not self._queue:
            self._idle.set()

    def _drain(self) -> None:
        while self._queue and self.outstanding < self._concurrency:
            self._admit(self._queue.popleft())

    def set_concurrency(self, value: int) -> Dict[str, int]:
        """
        Change the concurrency limit.

        The value is clamped to [min_concurrency, max_concurrency]. Running
        jobs are never revoked.

        Returns:
            Dictionary with the previous and current limit
        """
        previous = self._concurrency
        self._concurrency = self._clamp(value)

        if self._concurrency != value:
            log.warning(
                "Requested concurrency %s clamped to %d (bounds [%d, %d])",
                value, self._concurrency, self._min, self._max
            )
        log.info("Admission concurrency changed: %d -> %d", previous, self._concurrency)

        if self._concurrency > previous:
            self._drain()

        return {"previous": previous, "current": self._concurrency}

    def set_bounds(
        self,
        min_concurrency: Optional[int] = None,
        max_concurrency: Optional[int] = None
    ) -> None:
        """Change the allowed range and re-clamp the current limit."""
        new_min = self._min if min_concurrency is None else min_concurrency
        new_max = self._max if max_concurrency is None else max_concurrency
        if new_min < 1 or new_max < new_min:
            raise ValueError(f"Invalid concurrency bounds [{new_min}, {new_max}]")

        self._min, self._max = new_min, new_max
        self.set_concurrency(self._concurrency)

    def tickets(self) -> List[AdmissionTicket]:
        """Snapshot of the currently held tickets."""
        return list(self._tickets.values())

    async def join(self) -> None:
        """Wait until nothing is running or queued."""
        await self._idle.wait()

    def close(self) -> int:
        """
        Refuse new jobs and drop queued ones. Running jobs keep going.

        Returns:
            Number of queued jobs dropped
        """
        self._closed = True
        dropped = len(self._queue)
        self._queue.clear()
        if not self._tickets:
            self._idle.set()
        if dropped:
            log.warning("AdmissionGate closed, dropped %d queued job(s)", dropped)
        return dropped

    def status(self) -> Dict[str, int]:
        """Get the gate status for monitoring."""
        return {
            "concurrency": self._concurrency,
            "outstanding": self.outstanding,
            "queued": len(self._queue),
            "min_concurrency": self._min,
            "max_concurrency": self._max
        }
