"""
DEXSCREENER API CLIENT

Free, no API key. Used for:
- boosted tokens feed (candidate source for the boosted profile)
- per-token pair lists (oldest pair age, DEX presence checks)
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .base_screener import BaseScreener
from .normalizer import PairNormalizer

logger = logging.getLogger(__name__)


class DexScreenerAPI(BaseScreener):
    """
    DexScreener API client (FREE, no API key required).
    """

    BASE_URL = "https://api.dexscreener.com"
    name = "DEXSCREENER"

    def __init__(self, config: Dict = None, session=None):
        super().__init__(config, session)
        self.chain = self.config.get('chain', 'solana')
        self.normalizer = PairNormalizer(self.chain)

    async def fetch_boosted_tokens(self) -> List[Dict]:
        """Latest boosted tokens on this chain ([] on error)."""
        data = await self._request_json(f"{self.BASE_URL}/token-boosts/latest/v1")
        if not isinstance(data, list):
            return []

        tokens = [t for t in data if t.get('chainId') == self.chain and t.get('tokenAddress')]
        logger.info(f"[DEXSCREENER] {len(data)} boosted tokens, {len(tokens)} on {self.chain}")
        return tokens

    async def fetch_token_pairs(self, token_address: str) -> List[Dict]:
        """All pairs for a token via /latest/dex/tokens ([] on error)."""
        data = await self._request_json(f"{self.BASE_URL}/latest/dex/tokens/{token_address}")
        if not data or not data.get('pairs'):
            logger.debug(f"[DEXSCREENER] No pairs for {token_address}")
            return []
        return data['pairs']

    async def fetch_token_pairs_v1(self, token_address: str) -> List[Dict]:
        """Pairs for a token via /token-pairs/v1/{chain} ([] on error)."""
        data = await self._request_json(f"{self.BASE_URL}/token-pairs/v1/{self.chain}/{token_address}")
        if not isinstance(data, list):
            return []
        return data

    # ------------------------------------------------------------------
    # Pair helpers (pure)
    # ------------------------------------------------------------------

    @staticmethod
    def oldest_pair_age_hours(pairs: List[Dict], now: datetime = None) -> Optional[float]:
        """Age in hours of the oldest pair with a pairCreatedAt, None if none have one."""
        now = now or datetime.now(timezone.utc)
        oldest = None
        for pair in pairs:
            created_ms = pair.get('pairCreatedAt')
            if not created_ms:
                continue
            created = datetime.fromtimestamp(created_ms / 1000, tz=timezone.utc)
            age_hours = (now - created).total_seconds() / 3600
            if oldest is None or age_hours > oldest:
                oldest = age_hours
        return oldest

    @staticmethod
    def find_dex_pair(pairs: List[Dict], dex: str) -> Optional[Dict]:
        """First pair on `dex` by dexId, label or url."""
        for pair in pairs:
            if pair.get('dexId') == dex:
                return pair
            if dex in (pair.get('labels') or []) or dex in (pair.get('url') or ''):
                return pair
        return None

    @staticmethod
    def classify_raydium_pairs(pairs: List[Dict]) -> Dict[str, List[Dict]]:
        """
        Split Raydium pairs into Launchlab and CPMM buckets.

        DexScreener has no explicit pool-type field; url and labels are the
        only hints. A Raydium pair that is not a launchpad pair counts as CPMM.
        """
        launchlab, cpmm = [], []
        for pair in pairs:
            if pair.get('dexId') != 'raydium':
                continue
            url = pair.get('url') or ''
            labels = pair.get('labels') or []
            lowered = [label.lower() for label in labels]

            is_launch = (
                'launchlab' in url or 'launchpad' in url
                or any('launch' in label or 'lab' in label for label in lowered)
            )
            if is_launch:
                launchlab.append(pair)
            if 'cpmm' in url or 'cpmm' in lowered or not ('launchlab' in url or 'launchpad' in url):
                cpmm.append(pair)

        return {'raydium_launchlab': launchlab, 'raydium_cpmm': cpmm}

    def dex_presence(self, pairs: List[Dict]) -> Dict[str, bool]:
        """Which DEX venues the token trades on."""
        raydium = self.classify_raydium_pairs(pairs)
        presence = {
            'raydium_launchlab': bool(raydium['raydium_launchlab']),
            'raydium_cpmm': bool(raydium['raydium_cpmm']),
        }
        for pair in pairs:
            dex_id = pair.get('dexId')
            if dex_id:
                presence[dex_id] = True
        if self.find_dex_pair(pairs, 'meteora'):
            presence['meteora'] = True
        return presence
