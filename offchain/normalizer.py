"""
PAIR NORMALIZER

Converts raw GeckoTerminal pools and DexScreener pairs into one flat
candidate format, so filters and alerts never care where a pool came from.

NORMALIZED POOL FORMAT:
{
  "pool_address": "...",
  "pool_name": "TOKEN / SOL",
  "symbol": "TOKEN",
  "base_token_address": "...",
  "quote_token_address": "...",
  "dex_id": "meteora",
  "created_at": "2025-01-01T00:00:00+00:00",
  "age": {"age_string": "2h 5m", "age_minutes": 125.0, "age_hours": 2.08},
  "price_usd": 0.0012,
  "fdv_usd": 120000.0,
  "market_cap_usd": None,
  "liquidity_usd": 35000.0,
  "price_change_24h": 42.5,
  "volume_24h": 80000.0,
  "buys_24h": 320, "sells_24h": 210, "buyers_24h": 150, "sellers_24h": 90,
  "source": "geckoterminal"
}
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

logger = logging.getLogger(__name__)

UNKNOWN_AGE = {'age_string': 'Unknown', 'age_minutes': float('inf'), 'age_hours': float('inf')}


def parse_pool_age(created_at: Optional[str], now: datetime = None) -> Dict:
    """
    Age of a pool from its ISO creation timestamp.

    Unknown ages are infinite so every max-age filter rejects them.
    """
    if not created_at:
        return dict(UNKNOWN_AGE)

    try:
        created_time = datetime.fromisoformat(created_at.replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"Unparseable pool creation time: {created_at!r}")
        return dict(UNKNOWN_AGE)
    if created_time.tzinfo is None:
        created_time = created_time.replace(tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    age_minutes = max(0.0, (now - created_time).total_seconds() / 60)
    age_hours = age_minutes / 60

    if age_minutes < 60:
        age_string = f"{int(age_minutes)}m"
    elif age_hours < 24:
        hours = int(age_hours)
        minutes = int(age_minutes % 60)
        age_string = f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"
    else:
        age_string = f"{int(age_hours // 24)}d"

    return {'age_string': age_string, 'age_minutes': age_minutes, 'age_hours': age_hours}


class PairNormalizer:
    """
    Normalizes pool data from GeckoTerminal and DexScreener.
    """

    def __init__(self, network: str = "solana"):
        self.network = network

    def normalize_geckoterminal(self, pool: Dict, now: datetime = None) -> Optional[Dict]:
        """Flatten a GeckoTerminal pool object. None when it has no address."""
        attrs = pool.get('attributes') or {}
        relationships = pool.get('relationships') or {}

        pool_address = attrs.get('address')
        if not pool_address:
            return None

        pool_name = attrs.get('name') or ''
        base_token_id = ((relationships.get('base_token') or {}).get('data') or {}).get('id')
        quote_token_id = ((relationships.get('quote_token') or {}).get('data') or {}).get('id')
        dex_id = ((relationships.get('dex') or {}).get('data') or {}).get('id')

        price_changes = attrs.get('price_change_percentage') or {}
        volume = attrs.get('volume_usd') or {}
        tx_24h = (attrs.get('transactions') or {}).get('h24') or {}

        return {
            'pool_address': pool_address,
            'pool_name': pool_name,
            'symbol': pool_name.split(' / ')[0] if pool_name else 'Unknown',
            'base_token_address': self._strip_network(base_token_id),
            'quote_token_address': self._strip_network(quote_token_id),
            'dex_id': dex_id,
            'created_at': attrs.get('pool_created_at'),
            'age': parse_pool_age(attrs.get('pool_created_at'), now),
            'price_usd': self._safe_float(attrs.get('base_token_price_usd')),
            'fdv_usd': self._safe_float(attrs.get('fdv_usd')),
            'market_cap_usd': self._safe_float(attrs.get('market_cap_usd'), default=None),
            'liquidity_usd': self._safe_float(attrs.get('reserve_in_usd')),
            'price_change_24h': self._safe_float(price_changes.get('h24')),
            'volume_24h': self._safe_float(volume.get('h24')),
            'buys_24h': tx_24h.get('buys') or 0,
            'sells_24h': tx_24h.get('sells') or 0,
            'buyers_24h': tx_24h.get('buyers') or 0,
            'sellers_24h': tx_24h.get('sellers') or 0,
            'source': 'geckoterminal',
        }

    def normalize_dexscreener(self, pair: Dict, now: datetime = None) -> Optional[Dict]:
        """Flatten a DexScreener pair. None when it has no pair address."""
        pair_address = pair.get('pairAddress')
        if not pair_address:
            return None

        base = pair.get('baseToken') or {}
        quote = pair.get('quoteToken') or {}
        created_ms = pair.get('pairCreatedAt')
        created_at = None
        if created_ms:
            created_at = datetime.fromtimestamp(created_ms / 1000, tz=timezone.utc).isoformat()
        txns = (pair.get('txns') or {}).get('h24') or {}

        return {
            'pool_address': pair_address,
            'pool_name': f"{base.get('symbol', '?')} / {quote.get('symbol', '?')}",
            'symbol': base.get('symbol') or 'Unknown',
            'base_token_address': base.get('address'),
            'quote_token_address': quote.get('address'),
            'dex_id': pair.get('dexId'),
            'created_at': created_at,
            'age': parse_pool_age(created_at, now),
            'price_usd': self._safe_float(pair.get('priceUsd')),
            'fdv_usd': self._safe_float(pair.get('fdv')),
            'market_cap_usd': self._safe_float(pair.get('marketCap'), default=None),
            'liquidity_usd': self._safe_float((pair.get('liquidity') or {}).get('usd')),
            'price_change_24h': self._safe_float((pair.get('priceChange') or {}).get('h24')),
            'volume_24h': self._safe_float((pair.get('volume') or {}).get('h24')),
            'buys_24h': txns.get('buys') or 0,
            'sells_24h': txns.get('sells') or 0,
            'buyers_24h': 0,
            'sellers_24h': 0,
            'url': pair.get('url'),
            'source': 'dexscreener',
        }

    def _strip_network(self, token_id: Optional[str]) -> Optional[str]:
        # GeckoTerminal token ids look like "solana_<address>"
        if not token_id:
            return None
        prefix = f"{self.network}_"
        return token_id[len(prefix):] if token_id.startswith(prefix) else token_id

    @staticmethod
    def _safe_float(value, default: Optional[float] = 0.0) -> Optional[float]:
        if value is None or value == '':
            return default
        try:
            return float(value)
        except (TypeError, ValueError):
            return default
