"""
GECKOTERMINAL API CLIENT

FREE API for recently created pools, no keyword search needed.

API Documentation: https://www.geckoterminal.com/dex-api
Rate Limits: 30 requests per minute (FREE tier)

Endpoint used:
- /networks/{network}/new_pools?include=dex&page=N
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from .base_screener import BaseScreener
from .normalizer import PairNormalizer

logger = logging.getLogger(__name__)


class GeckoTerminalAPI(BaseScreener):
    """
    GeckoTerminal client for new pools on one network.

    Pages are fetched sequentially with `page_delay_seconds` between them.
    """

    BASE_URL = "https://api.geckoterminal.com/api/v2"
    name = "GECKOTERMINAL"

    def __init__(self, config: Dict = None, session=None):
        config = dict(config or {})
        config.setdefault('timeout_seconds', 15)
        config.setdefault('min_request_interval_seconds', 0)
        super().__init__(config, session)
        self.network = self.config.get('network', 'solana')
        self.page_delay_seconds = self.config.get('page_delay_seconds', 1.0)
        self.normalizer = PairNormalizer(self.network)

    async def fetch_new_pools_page(self, page: int) -> List[Dict]:
        """Raw pool objects from one new_pools page ([] on error)."""
        url = f"{self.BASE_URL}/networks/{self.network}/new_pools"
        data = await self._request_json(url, params={'include': 'dex', 'page': page})

        if not data or not isinstance(data.get('data'), list):
            logger.info(f"[GECKOTERMINAL] No data on page {page}")
            return []

        pools = data['data']
        logger.debug(f"[GECKOTERMINAL] Page {page}: {len(pools)} pools")
        return pools

    async def fetch_new_pools(self, pages: int = 10, dex_ids: Iterable[str] = None) -> List[Dict]:
        """
        Fetch pages 1..`pages` and return normalized pools.

        Args:
            pages: Number of new_pools pages to walk
            dex_ids: Keep only pools whose dex id is in this set (None keeps all)
        """
        wanted = set(dex_ids) if dex_ids else None
        raw_pools = []

        for page in range(1, pages + 1):
            raw_pools.extend(await self.fetch_new_pools_page(page))
            if page < pages and self.page_delay_seconds:
                await asyncio.sleep(self.page_delay_seconds)

        selected = []
        for pool in raw_pools:
            if wanted is not None and self.dex_id(pool) not in wanted:
                continue
            normalized = self.normalizer.normalize_geckoterminal(pool)
            if normalized:
                selected.append(normalized)

        logger.info(
            f"[GECKOTERMINAL] {len(raw_pools)} pools fetched from {pages} pages, "
            f"{len(selected)} on {', '.join(sorted(wanted)) if wanted else 'any dex'}"
        )
        return selected

    @staticmethod
    def dex_id(pool: Dict) -> Optional[str]:
        return (((pool.get('relationships') or {}).get('dex') or {}).get('data') or {}).get('id')
