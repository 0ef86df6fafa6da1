import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

from dedup import BackendUnavailable, ClaimStatus, DedupStore, MemoryBackend
from offchain import PoolFilter
from pool_monitor import PoolMonitor
from test_dedup_store import FakeClock

PROFILE = {
    'name': 'meteora_pools',
    'source': 'new_pools',
    'pages': 2,
    'dex_ids': ['meteora'],
    'dedup_key': 'token',
    'candidate_delay_seconds': 2.0,
}


def make_pool(token, pool=None, **overrides):
    data = {
        'pool_address': pool or f"Pool{token}",
        'symbol': token,
        'base_token_address': token,
        'age': {'age_string': '1h', 'age_minutes': 60, 'age_hours': 1.0},
        'liquidity_usd': 40000,
        'price_change_24h': 5.0,
        'fdv_usd': 100000,
    }
    data.update(overrides)
    return data


def make_gecko(*cycles):
    gecko = MagicMock()
    gecko.fetch_new_pools = AsyncMock(side_effect=list(cycles))
    gecko.consume_rate_limit_flag = MagicMock(return_value=False)
    return gecko


def make_notifier(sent=True, enabled=True):
    notifier = MagicMock()
    notifier.enabled = enabled
    notifier.send_pool_alert = AsyncMock(return_value=sent)
    return notifier


class FlakyBackend(MemoryBackend):
    def __init__(self):
        super().__init__()
        self.down = False

    async def try_claim(self, *args):
        if self.down:
            raise BackendUnavailable("down")
        return await super().try_claim(*args)

    async def mark(self, *args):
        if self.down:
            raise BackendUnavailable("down")
        return await super().mark(*args)

    async def cardinality(self, *args):
        if self.down:
            raise BackendUnavailable("down")
        return await super().cardinality(*args)


class MarkFailsBackend(MemoryBackend):
    """Claims and releases work; mark() fails while `mark_down` is set."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.mark_down = True

    async def mark(self, *args):
        if self.mark_down:
            raise BackendUnavailable("write refused")
        return await super().mark(*args)


class TestPoolMonitor(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.backend = MemoryBackend()
        self.store = DedupStore(self.backend, "meteora")
        self.sleep = AsyncMock()

    def make_monitor(self, gecko, notifier, filters=None, store=None, profile=None):
        return PoolMonitor(profile or PROFILE, store or self.store, notifier,
                           PoolFilter(filters or {'max_age_hours': 6, 'require_positive_price_change': True,
                                                  'terminal_rejections': ['too_old']}),
                           geckoterminal=gecko, sleep=self.sleep)

    async def test_signal_sent_once_across_cycles(self):
        pool = make_pool("TokenABC")
        gecko = make_gecko([pool], [pool])
        notifier = make_notifier()
        monitor = self.make_monitor(gecko, notifier)

        first = await monitor.run_cycle()
        second = await monitor.run_cycle()

        self.assertEqual(first['signals'], 1)
        self.assertEqual(second['signals'], 0)
        self.assertEqual(second['skipped_processed'], 1)
        notifier.send_pool_alert.assert_awaited_once()
        meta = await self.store.metadata("TokenABC")
        self.assertEqual(meta['reason'], 'signal_sent')
        self.assertEqual(meta['pool_address'], 'PoolTokenABC')

    async def test_same_token_in_two_pools_alerts_once(self):
        gecko = make_gecko([make_pool("TokenABC", "Pool1"), make_pool("TokenABC", "Pool2")])
        notifier = make_notifier()
        stats = await self.make_monitor(gecko, notifier).run_cycle()

        self.assertEqual(stats['fetched'], 2)
        self.assertEqual(stats['signals'], 1)
        self.assertEqual(stats['skipped_processed'], 1)
        self.assertEqual(stats['store_count'], 1)

    async def test_pool_dedup_key(self):
        gecko = make_gecko([make_pool("TokenABC", "Pool1"), make_pool("TokenABC", "Pool2")])
        notifier = make_notifier()
        profile = dict(PROFILE, dedup_key='pool')
        stats = await self.make_monitor(gecko, notifier, profile=profile).run_cycle()

        self.assertEqual(stats['signals'], 2)
        self.assertTrue(await self.store.is_processed("Pool1"))

    async def test_two_instances_share_one_store(self):
        pool = make_pool("TokenABC")
        notifier_a, notifier_b = make_notifier(), make_notifier()
        store_b = DedupStore(self.backend, "meteora")
        monitor_a = self.make_monitor(make_gecko([pool]), notifier_a)
        monitor_b = self.make_monitor(make_gecko([pool]), notifier_b, store=store_b)

        await asyncio.gather(monitor_a.run_cycle(), monitor_b.run_cycle())

        total = notifier_a.send_pool_alert.await_count + notifier_b.send_pool_alert.await_count
        self.assertEqual(total, 1)

    async def test_terminal_rejection_is_marked(self):
        old = make_pool("OldToken", age={'age_string': '8h', 'age_hours': 8.0})
        notifier = make_notifier()
        stats = await self.make_monitor(make_gecko([old]), notifier).run_cycle()

        self.assertEqual(stats['filtered'], 1)
        self.assertTrue(await self.store.is_processed("OldToken"))
        self.assertEqual((await self.store.metadata("OldToken"))['reason'], 'too_old')
        notifier.send_pool_alert.assert_not_awaited()

    async def test_retryable_rejection_is_reevaluated(self):
        dipping = make_pool("DipToken", price_change_24h=-5.0)
        recovered = make_pool("DipToken", price_change_24h=8.0)
        notifier = make_notifier()
        monitor = self.make_monitor(make_gecko([dipping], [recovered]), notifier)

        first = await monitor.run_cycle()
        self.assertEqual(first['filtered'], 1)
        self.assertFalse(await self.store.is_processed("DipToken"))

        second = await monitor.run_cycle()
        self.assertEqual(second['signals'], 1)
        notifier.send_pool_alert.assert_awaited_once()

    async def test_failed_delivery_retries_next_cycle(self):
        pool = make_pool("TokenABC")
        notifier = make_notifier(sent=False)
        monitor = self.make_monitor(make_gecko([pool], [pool]), notifier)

        first = await monitor.run_cycle()
        self.assertEqual(first['notify_failed'], 1)
        self.assertFalse(await self.store.is_processed("TokenABC"))

        notifier.send_pool_alert.return_value = True
        second = await monitor.run_cycle()
        self.assertEqual(second['signals'], 1)

    async def test_monitoring_only_mode_marks_logged(self):
        notifier = make_notifier(sent=False, enabled=False)
        await self.make_monitor(make_gecko([make_pool("TokenABC")]), notifier).run_cycle()
        self.assertEqual((await self.store.metadata("TokenABC"))['reason'], 'signal_logged')

    async def test_claim_released_after_processing(self):
        pool = make_pool("DipToken", price_change_24h=-1.0)
        await self.make_monitor(make_gecko([pool]), make_notifier()).run_cycle()
        self.assertFalse(await self.backend.exists(self.store.lock_key("DipToken")))

    async def test_claim_released_when_processing_raises(self):
        notifier = make_notifier()
        notifier.send_pool_alert.side_effect = RuntimeError("boom")
        stats = await self.make_monitor(make_gecko([make_pool("TokenABC")]), notifier).run_cycle()

        self.assertEqual(stats['errors'], 1)
        self.assertFalse(await self.backend.exists(self.store.lock_key("TokenABC")))

    async def test_locked_candidate_skipped(self):
        await self.store.try_claim("TokenABC")
        notifier = make_notifier()
        stats = await self.make_monitor(make_gecko([make_pool("TokenABC")]), notifier).run_cycle()

        self.assertEqual(stats['skipped_in_progress'], 1)
        notifier.send_pool_alert.assert_not_awaited()
        self.sleep.assert_not_awaited()

    async def test_candidate_without_address_is_invalid(self):
        stats = await self.make_monitor(
            make_gecko([make_pool("TokenABC", base_token_address=None)]), make_notifier()
        ).run_cycle()
        self.assertEqual(stats['invalid'], 1)

    async def test_delay_between_claimed_candidates(self):
        gecko = make_gecko([make_pool("A"), make_pool("B")])
        await self.make_monitor(gecko, make_notifier()).run_cycle()
        self.assertEqual(self.sleep.await_count, 2)
        self.sleep.assert_awaited_with(2.0)

    async def test_fail_open_outage_alerts_once_per_identifier(self):
        backend = FlakyBackend()
        store = DedupStore(backend, "meteora", fail_open=True)
        backend.down = True
        pool = make_pool("TokenABC")
        notifier = make_notifier()
        monitor = self.make_monitor(make_gecko([pool], [pool]), notifier, store=store)

        first = await monitor.run_cycle()
        second = await monitor.run_cycle()

        self.assertEqual(first['signals'], 1)
        self.assertIsNone(first['store_count'])
        self.assertEqual(second['skipped_processed'], 1)
        notifier.send_pool_alert.assert_awaited_once()

    async def test_fail_closed_outage_defers(self):
        backend = FlakyBackend()
        store = DedupStore(backend, "meteora", fail_open=False)
        backend.down = True
        notifier = make_notifier()
        stats = await self.make_monitor(make_gecko([make_pool("TokenABC")]), notifier, store=store).run_cycle()

        self.assertEqual(stats['deferred'], 1)
        notifier.send_pool_alert.assert_not_awaited()

    async def test_lost_mark_keeps_claim_until_recorded(self):
        clock = FakeClock()
        backend = MarkFailsBackend(clock)
        store = DedupStore(backend, "meteora", lease_seconds=600)
        pool = make_pool("TokenABC")
        notifier = make_notifier()
        monitor = self.make_monitor(make_gecko([pool], [pool], [pool]), notifier, store=store)
        peer = self.make_monitor(make_gecko([pool]), notifier, store=store)

        first = await monitor.run_cycle()
        self.assertEqual(first['signals'], 1)
        self.assertTrue(await backend.exists(store.lock_key("TokenABC")))

        backend.mark_down = False
        self.assertEqual((await peer.run_cycle())['skipped_in_progress'], 1)
        self.assertEqual((await monitor.run_cycle())['skipped_in_progress'], 1)

        clock.advance(601)
        third = await monitor.run_cycle()

        self.assertEqual(third['skipped_processed'], 1)
        self.assertTrue(await store.is_processed("TokenABC"))
        self.assertEqual((await store.metadata("TokenABC"))['reason'], 'recorded_after_outage')
        self.assertFalse(await backend.exists(store.lock_key("TokenABC")))
        notifier.send_pool_alert.assert_awaited_once()

    async def test_lost_terminal_rejection_mark_keeps_claim(self):
        clock = FakeClock()
        backend = MarkFailsBackend(clock)
        store = DedupStore(backend, "meteora", lease_seconds=600)
        old = make_pool("OldToken", age={'age_string': '7h', 'age_minutes': 420, 'age_hours': 7.0})
        monitor = self.make_monitor(make_gecko([old], [old]), make_notifier(), store=store)

        self.assertEqual((await monitor.run_cycle())['filtered'], 1)
        self.assertEqual((await store.try_claim("OldToken")).status, ClaimStatus.IN_PROGRESS)

        clock.advance(601)
        second = await monitor.run_cycle()
        self.assertEqual(second["skipped_processed"], 1)
        self.assertFalse(await store.is_processed("OldToken"))
        self.assertTrue(await backend.exists(store.lock_key("OldToken")))

    def test_consume_rate_limit(self):
        gecko = make_gecko()
        monitor = self.make_monitor(gecko, make_notifier())
        self.assertFalse(monitor.consume_rate_limit())
        gecko.consume_rate_limit_flag.return_value = True
        self.assertTrue(monitor.consume_rate_limit())


class TestBoostedSource(unittest.IsolatedAsyncioTestCase):

    async def test_boosted_tokens_resolved_after_claim(self):
        from offchain import PairNormalizer

        store = DedupStore(MemoryBackend(), "boosted_meteora")
        dexscreener = MagicMock()
        dexscreener.normalizer = PairNormalizer('solana')
        dexscreener.fetch_boosted_tokens = AsyncMock(return_value=[
            {'tokenAddress': 'MintA'}, {'tokenAddress': 'MintA'}, {'tokenAddress': 'MintB'},
        ])
        dexscreener.fetch_token_pairs_v1 = AsyncMock(side_effect=lambda token: [] if token == 'MintB' else [{
            'pairAddress': 'PairA',
            'baseToken': {'address': 'MintA', 'symbol': 'AAA'},
            'quoteToken': {'address': 'So111', 'symbol': 'SOL'},
            'priceChange': {'h24': 3.0},
        }])
        dexscreener.consume_rate_limit_flag = MagicMock(return_value=False)
        notifier = make_notifier()
        profile = {'name': 'boosted_meteora', 'source': 'boosted', 'dedup_key': 'token',
                   'candidate_delay_seconds': 0}

        monitor = PoolMonitor(profile, store, notifier,
                              PoolFilter({'require_positive_price_change': True}),
                              dexscreener=dexscreener)
        stats = await monitor.run_cycle()

        self.assertEqual(stats['fetched'], 2)
        self.assertEqual(stats['signals'], 1)
        self.assertEqual(stats['filtered'], 1)
        self.assertTrue(await store.is_processed('MintA'))
        # no pair data is retryable unless the profile says otherwise
        self.assertFalse(await store.is_processed('MintB'))

    def test_source_needs_client(self):
        with self.assertRaises(ValueError):
            PoolMonitor({'source': 'boosted'}, DedupStore(MemoryBackend(), "x"), make_notifier(), PoolFilter())


if __name__ == '__main__':
    unittest.main()
