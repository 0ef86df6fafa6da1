"""
Pool Monitor - poll / filter / notify loop for one bot profile.

Per candidate:
  try_claim ─┬─ not proceed ──> skip (in progress / processed / held back)
             └─ proceed ──> filters ─┬─ rejected ─> mark_processed if terminal
                                     └─ passed ───> notify ─> mark_processed (signal_sent)
  release the claim, unless a mark was lost: then the lease is kept so peers
  skip the candidate, and the mark is written once the store is back.

Candidates are handled one at a time with a pause between claimed ones.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from dedup import ClaimStatus, DedupStore, InvalidIdentifier
from offchain.filters import FilterOutcome, PoolFilter

logger = logging.getLogger(__name__)

# process_candidate() outcomes, also the cycle stats keys
SIGNAL = 'signals'
FILTERED = 'filtered'
SKIPPED_IN_PROGRESS = 'skipped_in_progress'
SKIPPED_PROCESSED = 'skipped_processed'
DEFERRED = 'deferred'
NOTIFY_FAILED = 'notify_failed'
INVALID = 'invalid'
ERROR = 'errors'

NO_PAIR_DATA = 'no_pair_data'
DEGRADED_MEMORY_SIZE = 1000


class PoolMonitor:
    """
    One logical worker for one profile.

    All collaborators are injected: the dedup store, the notifier, the API
    clients and the filter chain.
    """

    def __init__(self, profile: Dict, store: DedupStore, notifier, pool_filter: PoolFilter,
                 geckoterminal=None, dexscreener=None, sleep=None):
        self.profile = profile
        self.store = store
        self.notifier = notifier
        self.pool_filter = pool_filter
        self.geckoterminal = geckoterminal
        self.dexscreener = dexscreener
        self._sleep = sleep or asyncio.sleep

        self.source = profile.get('source', 'new_pools')
        self.dedup_key = profile.get('dedup_key', 'token')
        self.candidate_delay = profile.get('candidate_delay_seconds', 2.0)

        if self.source == 'new_pools' and geckoterminal is None:
            raise ValueError("new_pools source needs a GeckoTerminal client")
        if self.source == 'boosted' and dexscreener is None:
            raise ValueError("boosted source needs a DexScreener client")

        # Identifiers alerted while the store was unreachable. Keeps a
        # fail-open outage from re-alerting the same token every cycle.
        self._degraded_seen: "OrderedDict[str, None]" = OrderedDict()

        self.totals: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    async def fetch_candidates(self) -> List[Dict]:
        if self.source == 'new_pools':
            return await self.geckoterminal.fetch_new_pools(
                pages=self.profile.get('pages', 10),
                dex_ids=self.profile.get('dex_ids') or None,
            )

        tokens = await self.dexscreener.fetch_boosted_tokens()
        candidates, seen = [], set()
        for token in tokens:
            address = token.get('tokenAddress')
            if address and address not in seen:
                seen.add(address)
                candidates.append({'base_token_address': address, 'boosted': token})
        return candidates

    def dedup_identifier(self, candidate: Dict) -> Optional[str]:
        if self.dedup_key == 'pool':
            return candidate.get('pool_address')
        return candidate.get('base_token_address')

    async def _prepare(self, candidate: Dict) -> Optional[Dict]:
        """Full pool data for a claimed candidate (boosted tokens need a pair lookup)."""
        if self.source != 'boosted':
            return candidate

        token = candidate['base_token_address']
        pairs = await self.dexscreener.fetch_token_pairs_v1(token)
        if not pairs:
            return None
        pool = self.dexscreener.normalizer.normalize_dexscreener(pairs[0])
        if pool and not pool.get('base_token_address'):
            pool['base_token_address'] = token
        return pool

    # ------------------------------------------------------------------
    # Per-candidate protocol
    # ------------------------------------------------------------------

    async def process_candidate(self, candidate: Dict) -> str:
        identifier = self.dedup_identifier(candidate)
        try:
            claim = await self.store.try_claim(identifier)
        except InvalidIdentifier as e:
            logger.warning(f"⚠️  Skipping candidate without a usable {self.dedup_key} address: {e}")
            return INVALID

        if not claim.proceed:
            if claim.status is ClaimStatus.IN_PROGRESS:
                logger.info(f"🔒 {identifier} is locked by another process - skipping")
                return SKIPPED_IN_PROGRESS
            if claim.status is ClaimStatus.PROCESSED:
                logger.debug(f"⏭️  {identifier} already processed - skipping")
                return SKIPPED_PROCESSED
            return DEFERRED

        if identifier in self._degraded_seen:
            return await self._settle_after_outage(identifier, claim)
        if claim.degraded:
            logger.warning(f"⚠️  Processing {identifier} without dedup guarantee (store unavailable)")

        recorded = True
        try:
            result, recorded = await self._process_claimed(identifier, candidate)
            return result
        except Exception as e:
            logger.exception(f"❌ Error processing {identifier}: {e}")
            return ERROR
        finally:
            if recorded:
                await self.store.release_claim(claim)
            elif claim.claimed:
                # Lease keeps peers off until the outcome can be recorded
                logger.warning(f"🔒 Keeping claim on {identifier} until its lease expires")

    async def _settle_after_outage(self, identifier: str, claim) -> str:
        """Record an identifier handled while the store could not be written."""
        if claim.claimed:
            if await self.store.mark_processed(identifier, {'reason': 'recorded_after_outage'}):
                del self._degraded_seen[identifier]
                await self.store.release_claim(claim)
                logger.info(f"💾 {identifier} recorded after store outage")
            else:
                logger.warning(f"🔒 Keeping claim on {identifier}, store still not writable")
        else:
            logger.info(f"⏭️  {identifier} already handled during store outage - skipping")
        return SKIPPED_PROCESSED

    async def _process_claimed(self, identifier: str, candidate: Dict) -> Tuple[str, bool]:
        """Returns (outcome, recorded); recorded is False when a mark was lost."""
        pool = await self._prepare(candidate)
        if pool is None:
            logger.info(f"❌ No pair data for {identifier}")
            outcome = FilterOutcome(passed=False, reason=NO_PAIR_DATA,
                                    terminal=NO_PAIR_DATA in self.pool_filter.terminal_rejections)
            return FILTERED, await self._record_rejection(identifier, candidate, outcome)

        symbol = pool.get('symbol', 'Unknown')
        logger.info(f"🔍 Processing {symbol} ({identifier}) | age {(pool.get('age') or {}).get('age_string', '?')}")

        outcome = await self.pool_filter.evaluate(pool)
        if not outcome.passed:
            return FILTERED, await self._record_rejection(identifier, pool, outcome)

        logger.info(f"✅ {symbol} passed all filters - sending signal!")
        sent = await self.notifier.send_pool_alert(pool, self.profile, outcome.extras)
        if not sent and self.notifier.enabled:
            # Not marked: the next cycle retries delivery
            logger.warning(f"⚠️  Alert for {symbol} not delivered, will retry next cycle")
            return NOTIFY_FAILED, True

        recorded = await self._mark(identifier, {
            'reason': 'signal_sent' if sent else 'signal_logged',
            'symbol': symbol,
            'pool_address': pool.get('pool_address'),
            **{k: v for k, v in outcome.values.items() if v is not None},
        })
        if recorded:
            logger.info(f"🎯 Signal for {identifier} recorded")
        return SIGNAL, recorded

    async def _record_rejection(self, identifier: str, pool: Dict, outcome: FilterOutcome) -> bool:
        verdict = "marking processed" if outcome.terminal else "will re-check later"
        logger.info(f"🚫 {pool.get('symbol', identifier)} rejected: {outcome.reason} "
                    f"{outcome.detail} - {verdict}")
        if not outcome.terminal:
            return True
        return await self._mark(identifier, {
            'reason': outcome.reason,
            'symbol': pool.get('symbol'),
            'pool_address': pool.get('pool_address'),
            **{k: v for k, v in outcome.values.items() if v is not None},
        })

    async def _mark(self, identifier: str, metadata: Dict) -> bool:
        if await self.store.mark_processed(identifier, metadata):
            return True
        logger.warning(f"⚠️  {identifier} handled but not recorded (store unavailable)")
        self._remember_degraded(identifier)
        return False

    def _remember_degraded(self, identifier: str):
        self._degraded_seen[identifier] = None
        while len(self._degraded_seen) > DEGRADED_MEMORY_SIZE:
            self._degraded_seen.popitem(last=False)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> Dict:
        stats = {key: 0 for key in (SIGNAL, FILTERED, SKIPPED_IN_PROGRESS, SKIPPED_PROCESSED,
                                    DEFERRED, NOTIFY_FAILED, INVALID, ERROR)}
        candidates = await self.fetch_candidates()
        stats['fetched'] = len(candidates)

        if not candidates:
            logger.info("⏳ No new candidates found")
        else:
            logger.info(f"📝 Processing {len(candidates)} candidates...")

        for index, candidate in enumerate(candidates, 1):
            logger.debug(f"[{index}/{len(candidates)}] {self.dedup_identifier(candidate)}")
            result = await self.process_candidate(candidate)
            stats[result] += 1
            if result in (SIGNAL, FILTERED, NOTIFY_FAILED, ERROR) and self.candidate_delay:
                await self._sleep(self.candidate_delay)

        stats['store_count'] = await self.store.count()
        logger.info(
            f"🎯 Cycle done: {stats[SIGNAL]} signals, {stats[FILTERED]} filtered, "
            f"{stats[SKIPPED_PROCESSED] + stats[SKIPPED_IN_PROGRESS]} skipped"
        )
        logger.info(f"💾 Total processed in store: "
                    f"{stats['store_count'] if stats['store_count'] is not None else 'unavailable'}")

        for key, value in stats.items():
            if key != 'store_count':
                self.totals[key] = self.totals.get(key, 0) + value
        return stats

    def consume_rate_limit(self) -> bool:
        """True if any API client saw HTTP 429 since the last call."""
        clients = [c for c in (self.geckoterminal, self.dexscreener, getattr(self.pool_filter, 'rugcheck', None)) if c]
        flags = [c.consume_rate_limit_flag() for c in clients]
        return any(flags)

    def get_stats(self) -> Dict:
        return {
            'profile': self.profile.get('name'),
            'totals': dict(self.totals),
            'store': self.store.get_stats(),
            'filters': self.pool_filter.get_stats(),
        }
