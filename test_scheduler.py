import unittest
from unittest.mock import AsyncMock

from offchain import CycleScheduler

SCHEDULE = {
    'cycle_delay_seconds': 30,
    'error_step_seconds': 15,
    'max_wait_seconds': 120,
    'recovery_delay_seconds': 60,
    'rate_limit_recovery_delay_seconds': 180,
    'heartbeat_interval_seconds': 300,
}


class TestCycleScheduler(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.rate_limited = False
        self.sleep = AsyncMock()
        self.scheduler = CycleScheduler(SCHEDULE, rate_limited=lambda: self.rate_limited, sleep=self.sleep)

    async def test_productive_cycle_uses_base_delay(self):
        wait = await self.scheduler.run_once(AsyncMock(return_value={'fetched': 12}))
        self.assertEqual(wait, 30)
        self.assertEqual(self.scheduler.error_count, 0)

    async def test_empty_cycles_back_off_to_cap(self):
        empty = AsyncMock(return_value={'fetched': 0})
        waits = [await self.scheduler.run_once(empty) for _ in range(8)]
        self.assertEqual(waits[:3], [45, 60, 75])
        self.assertEqual(waits[-1], 120)

    async def test_success_resets_backoff(self):
        await self.scheduler.run_once(AsyncMock(return_value={'fetched': 0}))
        wait = await self.scheduler.run_once(AsyncMock(return_value={'fetched': 3}))
        self.assertEqual(wait, 30)

    async def test_crashed_cycle_recovers(self):
        wait = await self.scheduler.run_once(AsyncMock(side_effect=RuntimeError("api down")))
        self.assertEqual(wait, 60)
        self.assertEqual(self.scheduler.error_count, 5)
        self.assertEqual(self.scheduler.next_wait(), 105)

    async def test_rate_limited_crash_waits_longer(self):
        self.rate_limited = True
        wait = await self.scheduler.run_once(AsyncMock(side_effect=RuntimeError("429")))
        self.assertEqual(wait, 180)

    async def test_rate_limit_after_normal_cycle(self):
        self.rate_limited = True
        wait = await self.scheduler.run_once(AsyncMock(return_value={'fetched': 5}))
        self.assertEqual(wait, 180)

    async def test_run_stops_after_max_cycles(self):
        cycle = AsyncMock(return_value={'fetched': 1})
        await self.scheduler.run(cycle, max_cycles=3)

        self.assertEqual(cycle.await_count, 3)
        self.assertEqual(self.sleep.await_count, 2)
        self.assertEqual(self.scheduler.get_stats()['cycles'], 3)

    async def test_stop_ends_loop(self):
        async def cycle():
            self.scheduler.stop()
            return {'fetched': 1}

        await self.scheduler.run(cycle)
        self.sleep.assert_not_awaited()

    def test_heartbeat_line(self):
        line = self.scheduler.heartbeat_line()
        self.assertIn("Uptime: 0h 0m", line)
        self.assertIn("Cycles: 0", line)


if __name__ == '__main__':
    unittest.main()
