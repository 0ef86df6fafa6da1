"""
OFF-CHAIN SCREENER MODULE

Free public APIs only (no keys):
  GeckoTerminal new_pools / DexScreener boosted tokens
          ↓
  NORMALIZED POOL
          ↓
  POOL FILTERS (age, liquidity, price change, FDV, pairs, DEX presence, RugCheck)
          ↓
  CYCLE SCHEDULER (delays, backoff, heartbeat)
"""

from .base_screener import BaseScreener
from .dex_screener import DexScreenerAPI
from .geckoterminal_api import GeckoTerminalAPI
from .normalizer import PairNormalizer, parse_pool_age
from .filters import FilterOutcome, PoolFilter
from .scheduler import CycleScheduler

__all__ = [
    'BaseScreener',
    'DexScreenerAPI',
    'GeckoTerminalAPI',
    'PairNormalizer',
    'parse_pool_age',
    'FilterOutcome',
    'PoolFilter',
    'CycleScheduler',
]
