"""
Security Audit Module
Calls the RugCheck summary endpoint for Solana tokens, with a short cache.

RugCheck scores run 0..1000+, lower is safer. A token is considered safe
when its score is at or below `max_score` (400 by default).
"""

import asyncio
import logging
import time
from typing import Dict, Optional

from offchain.base_screener import BaseScreener

logger = logging.getLogger(__name__)

CACHE_TTL = 1800  # 30 minutes
DEFAULT_MAX_SCORE = 400


class RugCheckAPI(BaseScreener):
    """RugCheck report summary client."""

    BASE_URL = "https://api.rugcheck.xyz/v1"
    name = "RUGCHECK"

    def __init__(self, config: Dict = None, session=None):
        super().__init__(config, session)
        self.max_score = self.config.get('max_score', DEFAULT_MAX_SCORE)
        self.post_request_delay = self.config.get('post_request_delay_seconds', 1.0)
        self._cache: Dict[str, tuple] = {}

    def _get_cache(self, token_address: str) -> Optional[Dict]:
        entry = self._cache.get(token_address)
        if entry is None:
            return None
        timestamp, data = entry
        if time.time() - timestamp >= CACHE_TTL:
            del self._cache[token_address]
            return None
        return data

    def _sweep_cache(self, now: float):
        expired = [token for token, (timestamp, _) in self._cache.items() if now - timestamp >= CACHE_TTL]
        for token in expired:
            del self._cache[token]

    async def fetch_safety(self, token_address: str, max_score: int = None) -> Dict:
        """
        Safety verdict for a token.

        Returns:
            {'score': int or None, 'is_safe': bool}. Any failure yields
            score None and is_safe False.
        """
        limit = self.max_score if max_score is None else max_score
        token_address = token_address.strip()

        cached = self._get_cache(token_address)
        if cached is None:
            logger.info(f"🛡️ Checking RugCheck safety for {token_address}...")
            data = await self._request_json(f"{self.BASE_URL}/tokens/{token_address}/report/summary")
            if self.post_request_delay:
                await asyncio.sleep(self.post_request_delay)

            if not isinstance(data, dict):
                logger.warning(f"⚠️  RugCheck returned no report for {token_address}")
                return {'score': None, 'is_safe': False}

            cached = data
            now = time.time()
            self._sweep_cache(now)
            self._cache[token_address] = (now, data)

        score = cached.get('score') or 0
        try:
            score = int(score)
        except (TypeError, ValueError):
            logger.warning(f"⚠️  RugCheck score not numeric for {token_address}: {score!r}")
            return {'score': None, 'is_safe': False}

        is_safe = score <= limit
        logger.info(f"✅ Safety check complete: {score}/1000 ({'SAFE' if is_safe else 'RISKY'})")
        return {'score': score, 'is_safe': is_safe}
