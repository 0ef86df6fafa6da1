"""
DEDUP LOCK STORE

At-most-once processing for discovered pools/tokens.

  poll cycle ──> try_claim(address)
                    │  CLAIMED      -> filter / notify -> mark_processed -> release
                    │  IN_PROGRESS  -> skip this cycle
                    │  PROCESSED    -> skip permanently
                    └  UNAVAILABLE  -> store policy (fail-open by default)

Keys (per namespace):
  processed:{namespace}                 set of finished identifiers
  metadata:{namespace}:{identifier}     audit hash, expires (30 days)
  lock:{namespace}:{identifier}         live claim, expires (lease)
"""

from .errors import DedupError, BackendUnavailable, InvalidIdentifier
from .models import ClaimStatus, ClaimResult
from .backends import DedupBackend, MemoryBackend, RedisBackend
from .store import DedupStore

__all__ = [
    'DedupError',
    'BackendUnavailable',
    'InvalidIdentifier',
    'ClaimStatus',
    'ClaimResult',
    'DedupBackend',
    'MemoryBackend',
    'RedisBackend',
    'DedupStore',
]
