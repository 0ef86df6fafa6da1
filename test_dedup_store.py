import asyncio
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor

from dedup import (
    BackendUnavailable,
    ClaimStatus,
    DedupBackend,
    DedupStore,
    InvalidIdentifier,
    MemoryBackend,
)

TOKEN = "TokenABC"


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class DownBackend(MemoryBackend):
    """MemoryBackend whose every call fails while `down` is set."""

    def __init__(self):
        super().__init__()
        self.down = True

    def _check(self):
        if self.down:
            raise BackendUnavailable("connection refused")

    async def try_claim(self, *args):
        self._check()
        return await super().try_claim(*args)

    async def release(self, *args):
        self._check()
        return await super().release(*args)

    async def mark(self, *args):
        self._check()
        return await super().mark(*args)

    async def cardinality(self, *args):
        self._check()
        return await super().cardinality(*args)

    async def is_member(self, *args):
        self._check()
        return await super().is_member(*args)


class RemarkDuringPrune(MemoryBackend):
    """Re-marks one member right after prune() has listed the set."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.remark = None

    async def members(self, set_key):
        listed = await super().members(set_key)
        if self.remark:
            store, identifier = self.remark
            self.remark = None
            await store.mark_processed(identifier, {'reason': 'signal_sent'})
        return listed


class TestClaimProtocol(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.backend = MemoryBackend(clock=self.clock)
        self.store = DedupStore(self.backend, "meteora", lease_seconds=600,
                                metadata_ttl_seconds=30 * 24 * 3600)

    async def test_first_claim_wins_second_sees_in_progress(self):
        first = await self.store.try_claim(TOKEN)
        second = await self.store.try_claim(TOKEN)

        self.assertEqual(first.status, ClaimStatus.CLAIMED)
        self.assertTrue(first.proceed)
        self.assertIsNotNone(first.token)
        self.assertEqual(second.status, ClaimStatus.IN_PROGRESS)
        self.assertFalse(second.proceed)
        self.assertIsNone(second.token)

    async def test_claim_expires_after_lease(self):
        first = await self.store.try_claim(TOKEN, lease_seconds=5)
        self.clock.advance(5)
        second = await self.store.try_claim(TOKEN)

        self.assertTrue(first.claimed)
        self.assertTrue(second.claimed)
        self.assertNotEqual(first.token, second.token)

    async def test_processed_is_permanent(self):
        claim = await self.store.try_claim(TOKEN)
        self.assertTrue(await self.store.mark_processed(TOKEN, {'reason': 'signal_sent'}))
        self.assertTrue(await self.store.release_claim(claim))

        self.clock.advance(365 * 24 * 3600)
        again = await self.store.try_claim(TOKEN)

        self.assertEqual(again.status, ClaimStatus.PROCESSED)
        self.assertFalse(again.proceed)
        self.assertTrue(await self.store.is_processed(TOKEN))

    async def test_mark_is_idempotent(self):
        await self.store.mark_processed(TOKEN)
        await self.store.mark_processed(TOKEN)
        self.assertEqual(await self.store.count(), 1)

    async def test_release_after_retryable_rejection_allows_reclaim(self):
        claim = await self.store.try_claim(TOKEN)
        await self.store.release_claim(claim)

        again = await self.store.try_claim(TOKEN)
        self.assertEqual(again.status, ClaimStatus.CLAIMED)
        self.assertFalse(await self.store.is_processed(TOKEN))

    async def test_release_with_foreign_token_keeps_claim(self):
        first = await self.store.try_claim(TOKEN, lease_seconds=5)
        self.clock.advance(6)
        second = await self.store.try_claim(TOKEN)

        # The stale worker finishes late and releases with its old token
        self.assertTrue(await self.store.release(TOKEN, first.token))

        third = await self.store.try_claim(TOKEN)
        self.assertEqual(third.status, ClaimStatus.IN_PROGRESS)
        await self.store.release_claim(second)
        fourth = await self.store.try_claim(TOKEN)
        self.assertEqual(fourth.status, ClaimStatus.CLAIMED)

    async def test_release_of_missing_claim_is_noop(self):
        self.assertTrue(await self.store.release(TOKEN, "deadbeef"))
        self.assertTrue(await self.store.release(TOKEN, None))

    async def test_metadata_recorded_and_expires(self):
        await self.store.mark_processed(TOKEN, {'reason': 'too_old', 'age': '7h', 'skip': None})
        meta = await self.store.metadata(TOKEN)

        self.assertEqual(meta['address'], TOKEN)
        self.assertEqual(meta['reason'], 'too_old')
        self.assertEqual(meta['age'], '7h')
        self.assertIn('processed_at', meta)
        self.assertNotIn('skip', meta)

        self.clock.advance(30 * 24 * 3600)
        self.assertEqual(await self.store.metadata(TOKEN), {})
        # Membership outlives the metadata
        self.assertTrue(await self.store.is_processed(TOKEN))

    async def test_prune_removes_entries_with_expired_metadata(self):
        await self.store.mark_processed("OldToken")
        self.clock.advance(29 * 24 * 3600)
        await self.store.mark_processed("NewToken")
        self.clock.advance(2 * 24 * 3600)

        self.assertEqual(await self.store.prune(), 1)
        self.assertFalse(await self.store.is_processed("OldToken"))
        self.assertTrue(await self.store.is_processed("NewToken"))
        self.assertEqual((await self.store.try_claim("OldToken")).status, ClaimStatus.CLAIMED)

    async def test_prune_keeps_member_marked_again_mid_prune(self):
        backend = RemarkDuringPrune(self.clock)
        store = DedupStore(backend, "meteora", metadata_ttl_seconds=60)
        await store.mark_processed("OldToken")
        await store.mark_processed("StaleToken")
        self.clock.advance(61)
        backend.remark = (store, "OldToken")

        self.assertEqual(await store.prune(), 1)
        self.assertTrue(await store.is_processed("OldToken"))
        self.assertFalse(await store.is_processed("StaleToken"))

    async def test_clear_claims_only_touches_own_namespace(self):
        other = DedupStore(self.backend, "raydium_bot1")
        await self.store.try_claim(TOKEN)
        await other.try_claim(TOKEN)

        self.assertEqual(await self.store.clear_claims(), 1)
        self.assertTrue((await self.store.try_claim(TOKEN)).claimed)
        self.assertEqual((await other.try_claim(TOKEN)).status, ClaimStatus.IN_PROGRESS)

    async def test_namespaces_are_isolated(self):
        other = DedupStore(self.backend, "raydium_bot1")
        await self.store.mark_processed(TOKEN)

        self.assertEqual((await other.try_claim(TOKEN)).status, ClaimStatus.CLAIMED)
        self.assertEqual(await other.count(), 0)
        self.assertEqual(await self.store.count(), 1)

    async def test_concurrent_claims_have_single_winner(self):
        results = await asyncio.gather(*(self.store.try_claim(TOKEN) for _ in range(50)))
        winners = [r for r in results if r.status is ClaimStatus.CLAIMED]

        self.assertEqual(len(winners), 1)
        self.assertTrue(all(r.status is ClaimStatus.IN_PROGRESS for r in results if r is not winners[0]))

    async def test_token_abc_scenario(self):
        """Two workers, one token: exactly one alert, then never again."""
        a = await self.store.try_claim(TOKEN)
        b = await self.store.try_claim(TOKEN)
        self.assertTrue(a.proceed)
        self.assertFalse(b.proceed)

        await self.store.mark_processed(TOKEN, {'reason': 'signal_sent'})
        await self.store.release_claim(a)

        later = await self.store.try_claim(TOKEN)
        self.assertEqual(later.status, ClaimStatus.PROCESSED)
        self.assertEqual(self.store.get_stats()['claimed'], 1)


class TestThreadedClaims(unittest.TestCase):
    """Each thread runs its own event loop against one shared MemoryBackend."""

    def test_threads_racing_on_one_identifier_have_single_winner(self):
        store = DedupStore(MemoryBackend(), "meteora")
        workers = 32
        barrier = threading.Barrier(workers)

        def attempt(_):
            barrier.wait()
            return asyncio.run(store.try_claim(TOKEN))

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(attempt, range(workers)))

        statuses = [r.status for r in results]
        self.assertEqual(statuses.count(ClaimStatus.CLAIMED), 1)
        self.assertEqual(statuses.count(ClaimStatus.IN_PROGRESS), workers - 1)

    def test_threads_claiming_after_mark_all_see_processed(self):
        store = DedupStore(MemoryBackend(), "meteora")
        asyncio.run(store.mark_processed(TOKEN))

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: asyncio.run(store.try_claim(TOKEN)), range(8)))

        self.assertTrue(all(r.status is ClaimStatus.PROCESSED for r in results))


class TestValidation(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.store = DedupStore(MemoryBackend(), "meteora")

    async def test_invalid_identifiers_raise(self):
        for bad in ("", "two words", "tab\tbed", None):
            with self.assertRaises(InvalidIdentifier):
                await self.store.try_claim(bad)
        with self.assertRaises(InvalidIdentifier):
            await self.store.mark_processed(" ")

    async def test_invalid_identifier_is_value_error(self):
        with self.assertRaises(ValueError):
            await self.store.is_processed("")

    def test_invalid_namespace(self):
        for bad in ("", "a:b", "has space"):
            with self.assertRaises(ValueError):
                DedupStore(MemoryBackend(), bad)

    def test_invalid_lease(self):
        with self.assertRaises(ValueError):
            DedupStore(MemoryBackend(), "meteora", lease_seconds=0)

    def test_keys(self):
        self.assertEqual(self.store.processed_key, "processed:meteora")
        self.assertEqual(self.store.lock_key(TOKEN), "lock:meteora:TokenABC")
        self.assertEqual(self.store.metadata_key(TOKEN), "metadata:meteora:TokenABC")

    def test_memory_backend_is_a_backend(self):
        self.assertIsInstance(MemoryBackend(), DedupBackend)


class TestOutagePolicy(unittest.IsolatedAsyncioTestCase):

    async def test_fail_open_proceeds(self):
        store = DedupStore(DownBackend(), "meteora", fail_open=True)
        claim = await store.try_claim(TOKEN)

        self.assertEqual(claim.status, ClaimStatus.UNAVAILABLE)
        self.assertTrue(claim.proceed)
        self.assertTrue(claim.degraded)
        self.assertIn("connection refused", claim.error)

    async def test_fail_closed_holds(self):
        store = DedupStore(DownBackend(), "meteora", fail_open=False)
        claim = await store.try_claim(TOKEN)

        self.assertEqual(claim.status, ClaimStatus.UNAVAILABLE)
        self.assertFalse(claim.proceed)

    async def test_outage_never_raises(self):
        store = DedupStore(DownBackend(), "meteora")

        self.assertFalse(await store.mark_processed(TOKEN))
        self.assertFalse(await store.release(TOKEN, "abc"))
        self.assertIsNone(await store.count())
        self.assertIsNone(await store.is_processed(TOKEN))
        self.assertEqual(store.get_stats()['unavailable'], 0)

    async def test_recovery_after_outage(self):
        backend = DownBackend()
        store = DedupStore(backend, "meteora")
        await store.try_claim(TOKEN)

        backend.down = False
        claim = await store.try_claim(TOKEN)
        self.assertEqual(claim.status, ClaimStatus.CLAIMED)
        self.assertEqual(store.get_stats()['unavailable'], 1)


if __name__ == '__main__':
    unittest.main()
