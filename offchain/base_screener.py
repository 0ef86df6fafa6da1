"""
BASE SCREENER - Shared HTTP plumbing for off-chain data sources

GeckoTerminal, DexScreener and RugCheck clients all:
- share one lazily created aiohttp session
- keep a minimum interval between requests
- bound every request with a timeout
- return None on any failure (never raise into the polling loop)
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    'Accept': 'application/json',
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36',
}


class BaseScreener:
    """
    Base class for off-chain API clients.

    Subclasses set BASE_URL and a `name` used in log lines.
    """

    BASE_URL = ""
    name = "API"

    def __init__(self, config: Dict = None, session: aiohttp.ClientSession = None):
        """
        Args:
            config: Optional dict with 'timeout_seconds' and 'min_request_interval_seconds'
            session: Optional shared aiohttp session (not closed by this client)
        """
        self.config = config or {}
        self.timeout_seconds = self.config.get('timeout_seconds', 10)
        self.min_request_interval = self.config.get('min_request_interval_seconds', 0.2)

        self.session = session
        self._owns_session = session is None
        self.last_request_time = None
        self.request_count = 0
        self.error_count = 0
        self.rate_limited = False

    async def _ensure_session(self):
        """Ensure aiohttp session exists."""
        if self.session is None:
            self.session = aiohttp.ClientSession(headers=DEFAULT_HEADERS)
            self._owns_session = True

    async def close(self):
        """Close aiohttp session if we created it."""
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None

    async def _request_json(self, url: str, params: Dict = None):
        """
        Rate-limited GET returning decoded JSON, or None on any failure.

        HTTP 429 sets `rate_limited` so the scheduler can back off; it is
        not retried here.
        """
        await self._ensure_session()

        if self.last_request_time:
            elapsed = (datetime.now() - self.last_request_time).total_seconds()
            if elapsed < self.min_request_interval:
                await asyncio.sleep(self.min_request_interval - elapsed)

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with self.session.get(url, params=params, headers=DEFAULT_HEADERS,
                                        timeout=timeout) as response:
                self._update_rate_limit()

                if response.status == 200:
                    return await response.json()
                if response.status == 429:
                    self.rate_limited = True
                    self.error_count += 1
                    logger.warning(f"[{self.name}] Rate limited (429): {url}")
                    return None

                self.error_count += 1
                logger.warning(f"[{self.name}] HTTP {response.status}: {url}")
                return None

        except asyncio.TimeoutError:
            self.error_count += 1
            logger.error(f"[{self.name}] Timeout after {self.timeout_seconds}s: {url}")
            return None
        except (aiohttp.ClientError, ValueError) as e:
            self.error_count += 1
            logger.error(f"[{self.name}] Request error: {e}")
            return None

    def _update_rate_limit(self):
        """Update internal request tracking."""
        self.last_request_time = datetime.now()
        self.request_count += 1

    def consume_rate_limit_flag(self) -> bool:
        """Return and clear the 429 flag."""
        flagged = self.rate_limited
        self.rate_limited = False
        return flagged

    def get_stats(self) -> Dict:
        return {
            'source': self.name,
            'request_count': self.request_count,
            'error_count': self.error_count,
            'last_request': self.last_request_time.isoformat() if self.last_request_time else None,
        }
