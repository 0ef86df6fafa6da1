"""
CYCLE SCHEDULER

Drives the poll-filter-notify loop:
- fixed delay after a productive cycle
- growing delay after empty cycles (capped)
- long recovery sleep after a crashed cycle, longer on HTTP 429
- heartbeat log every 5 minutes

Retries happen only at cycle boundaries; nothing busy-loops.
"""

import asyncio
import logging
import resource
import time
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CycleScheduler:
    """
    Runs an async cycle callback forever (or until stop()).

    The callback returns a stats dict; `fetched == 0` counts as an empty cycle.
    `rate_limited` is an optional callable telling the scheduler whether the
    last failure was a 429.
    """

    def __init__(self, config: Dict = None, rate_limited: Callable[[], bool] = None,
                 sleep: Callable[[float], Awaitable] = None):
        self.config = config or {}

        self.cycle_delay = self.config.get('cycle_delay_seconds', 30)
        self.error_step = self.config.get('error_step_seconds', 15)
        self.max_wait = self.config.get('max_wait_seconds', 120)
        self.recovery_delay = self.config.get('recovery_delay_seconds', 60)
        self.rate_limit_recovery_delay = self.config.get('rate_limit_recovery_delay_seconds', 180)
        self.heartbeat_interval = self.config.get('heartbeat_interval_seconds', 300)

        self._rate_limited = rate_limited or (lambda: False)
        self._sleep = sleep or asyncio.sleep
        self._running = False
        self._started_at = time.time()

        self.cycle_count = 0
        self.error_count = 0
        self.last_stats: Optional[Dict] = None

    def next_wait(self) -> float:
        """Delay before the next cycle given the current consecutive error count."""
        if self.error_count > 0:
            return min(self.cycle_delay + self.error_count * self.error_step, self.max_wait)
        return self.cycle_delay

    async def run_once(self, cycle: Callable[[], Awaitable[Dict]]) -> float:
        """
        Run one cycle and return how long to wait before the next one.
        """
        self.cycle_count += 1
        started = time.time()
        logger.info(f"🔄 Starting monitoring cycle #{self.cycle_count}")

        try:
            stats = await cycle()
        except Exception as e:
            self.error_count += 5
            if self._rate_limited():
                logger.error(f"❌ Cycle #{self.cycle_count} hit rate limiting: {e}")
                return self.rate_limit_recovery_delay
            logger.exception(f"❌ Critical error in monitoring cycle #{self.cycle_count}: {e}")
            return self.recovery_delay

        self.last_stats = stats or {}
        if self.last_stats.get('fetched', 0) == 0:
            self.error_count += 1
        else:
            self.error_count = 0

        elapsed = time.time() - started
        wait = self.next_wait()
        if self._rate_limited():
            wait = max(wait, self.rate_limit_recovery_delay)
            logger.warning(f"🔄 Rate limiting detected, waiting {wait:.0f}s...")
        elif self.error_count > 0:
            logger.warning(f"⚠️  {self.error_count} consecutive empty cycles, waiting {wait:.0f}s...")

        logger.info(f"✅ Completed cycle #{self.cycle_count} in {elapsed:.1f}s, next in {wait:.0f}s")
        return wait

    async def run(self, cycle: Callable[[], Awaitable[Dict]], max_cycles: int = None):
        """Loop until stop() or `max_cycles` cycles have run."""
        self._running = True
        runs = 0
        while self._running:
            wait = await self.run_once(cycle)
            runs += 1
            if max_cycles is not None and runs >= max_cycles:
                break
            if self._running:
                await self._sleep(wait)
        self._running = False

    def stop(self):
        self._running = False

    def uptime_seconds(self) -> float:
        return time.time() - self._started_at

    def heartbeat_line(self) -> str:
        uptime = int(self.uptime_seconds())
        hours, minutes = uptime // 3600, (uptime % 3600) // 60
        # ru_maxrss is KiB on Linux
        memory_mb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024
        return f"💓 Bot heartbeat - Uptime: {hours}h {minutes}m | Memory: {memory_mb:.0f}MB | Cycles: {self.cycle_count}"

    async def heartbeat(self):
        """Log a heartbeat line every `heartbeat_interval` seconds. Cancel to stop."""
        while True:
            await self._sleep(self.heartbeat_interval)
            logger.info(self.heartbeat_line())

    def get_stats(self) -> Dict:
        return {
            'cycles': self.cycle_count,
            'consecutive_errors': self.error_count,
            'next_wait_seconds': self.next_wait(),
            'uptime_seconds': int(self.uptime_seconds()),
            'last_cycle': self.last_stats,
        }
