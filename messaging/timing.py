"""
Sweep Timer - Periodic Expiry Pass

Runs one background task that periodically evicts expired dedup records,
sent fingerprints and history entries, so memory stays bounded even for
conversations and message IDs that are never looked up again.

The sweep only ever deletes expired or empty entries. Live aggregation
batches and admission tickets are never touched.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

log = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 1800.0  # seconds


class Sweepable(Protocol):
    def sweep(self) -> int: ...


class SweepTimer:
    """
    Periodic sweep over a set of named components.

    Example:
        timer = SweepTimer({"dedup": dedup, "history": store}, interval=1800)
        timer.start()
        ...
        await timer.stop()
    """

    def __init__(
        self,
        targets: Dict[str, Sweepable],
        interval: float = DEFAULT_SWEEP_INTERVAL
    ):
        """
        Initialize the sweep timer.

        Args:
            targets: Components to sweep, by display name
            interval: Seconds between sweeps
        """
        if interval <= 0:
            raise ValueError("Sweep interval must be positive")

        self._targets = dict(targets)
        self._interval = interval
        self._task: Optional[asyncio.Task] = None
        self._runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> Dict[str, int]:
        """
        Sweep every target now.

        A failing target is logged and skipped; the others still run.

        Returns:
            Number of entries removed per target
        """
        removed: Dict[str, int] = {}
        for name, target in self._targets.items():
            try:
                removed[name] = target.sweep()
            except Exception:
                log.exception("Sweep failed for %s", name)
                removed[name] = 0

        self._runs += 1
        total = sum(removed.values())
        if total:
            log.info("Sweep removed %d expired entries: %s", total, removed)
        else:
            log.debug("Sweep found nothing to remove")
        return removed

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval)
                self.run_once()
        except asyncio.CancelledError:
            pass

    def start(self) -> None:
        """
        Start the background sweep.

        Must be called from a running event loop. Errors propagate: a
        pipeline without its sweep must not start.
        """
        if self.running:
            return

        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._loop())
        log.info("Sweep timer started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        """Cancel the background sweep and wait for it to finish."""
        if self._task is None:
            return

        task, self._task = self._task, None
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.debug("Sweep timer stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get sweep timer statistics."""
        return {
            "running": self.running,
            "interval_seconds": self._interval,
            "runs": self._runs
        }
