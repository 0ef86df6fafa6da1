"""
DEDUP LOCK STORE

Guarantees that at most one polling attempt per identifier reaches the
"do work" phase, across concurrent bot instances and restarts.

Outage policy:
- fail_open=True (default): backend down -> ClaimResult(UNAVAILABLE, proceed=True).
  Availability over exactly-once; a duplicate alert is possible while degraded.
- fail_open=False: backend down -> proceed=False, the candidate waits for a
  later cycle.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from .backends import CLAIM_OK, CLAIM_LOCKED, DedupBackend
from .errors import BackendUnavailable, InvalidIdentifier
from .models import ClaimResult, ClaimStatus

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 10 * 60
DEFAULT_METADATA_TTL_SECONDS = 30 * 24 * 60 * 60


def validate_identifier(identifier) -> str:
    """Reject empty, non-string or whitespace-containing identifiers."""
    if not isinstance(identifier, str) or not identifier:
        raise InvalidIdentifier(f"Identifier must be a non-empty string, got {identifier!r}")
    if any(ch.isspace() for ch in identifier):
        raise InvalidIdentifier(f"Identifier contains whitespace: {identifier!r}")
    return identifier


class DedupStore:
    """
    Claim / mark / release protocol over a DedupBackend.

    One instance per namespace. Instances are created by the caller and
    passed around explicitly.
    """

    def __init__(self, backend: DedupBackend, namespace: str,
                 lease_seconds: float = DEFAULT_LEASE_SECONDS,
                 metadata_ttl_seconds: int = DEFAULT_METADATA_TTL_SECONDS,
                 fail_open: bool = True):
        if not namespace or ':' in namespace or any(ch.isspace() for ch in namespace):
            raise ValueError(f"Invalid namespace: {namespace!r}")
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be > 0")
        if metadata_ttl_seconds <= 0:
            raise ValueError("metadata_ttl_seconds must be > 0")

        self.backend = backend
        self.namespace = namespace
        self.lease_seconds = lease_seconds
        self.metadata_ttl_seconds = metadata_ttl_seconds
        self.fail_open = fail_open

        self.stats = {
            'claimed': 0,
            'in_progress': 0,
            'processed': 0,
            'unavailable': 0,
        }

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @property
    def processed_key(self) -> str:
        return f"processed:{self.namespace}"

    def lock_key(self, identifier: str) -> str:
        return f"lock:{self.namespace}:{identifier}"

    def metadata_key(self, identifier: str) -> str:
        return f"metadata:{self.namespace}:{identifier}"

    # ------------------------------------------------------------------
    # Claim protocol
    # ------------------------------------------------------------------

    async def try_claim(self, identifier: str, lease_seconds: float = None) -> ClaimResult:
        """
        Claim `identifier` for processing.

        One atomic backend call decides between CLAIMED, IN_PROGRESS and
        PROCESSED. Never raises for those outcomes, nor for an outage.
        """
        validate_identifier(identifier)
        lease = self.lease_seconds if lease_seconds is None else lease_seconds
        if lease <= 0:
            raise ValueError("lease_seconds must be > 0")

        token = uuid.uuid4().hex
        try:
            outcome = await self.backend.try_claim(
                self.lock_key(identifier), self.processed_key, identifier, token, lease
            )
        except BackendUnavailable as e:
            self.stats['unavailable'] += 1
            if self.fail_open:
                logger.warning(f"⚠️  Dedup backend unavailable ({e}) - treating {identifier} as unprocessed")
            else:
                logger.warning(f"⚠️  Dedup backend unavailable ({e}) - holding {identifier} until next cycle")
            return ClaimResult(
                identifier=identifier,
                status=ClaimStatus.UNAVAILABLE,
                proceed=self.fail_open,
                error=str(e),
            )

        if outcome == CLAIM_OK:
            self.stats['claimed'] += 1
            now = datetime.now(timezone.utc)
            logger.debug(f"🔒 Claimed {identifier} for {lease:.0f}s")
            return ClaimResult(
                identifier=identifier,
                status=ClaimStatus.CLAIMED,
                token=token,
                acquired_at=now,
                expires_at=now + timedelta(seconds=lease),
                proceed=True,
            )
        if outcome == CLAIM_LOCKED:
            self.stats['in_progress'] += 1
            logger.debug(f"🔒 {identifier} is claimed by another worker - skipping")
            return ClaimResult(identifier=identifier, status=ClaimStatus.IN_PROGRESS)

        self.stats['processed'] += 1
        logger.debug(f"⏭️  {identifier} already processed - skipping")
        return ClaimResult(identifier=identifier, status=ClaimStatus.PROCESSED)

    async def mark_processed(self, identifier: str, metadata: Dict = None) -> bool:
        """
        Add `identifier` to the processed set (terminal, idempotent) and store
        its audit metadata with its own expiry. Does not need a claim.

        Returns False only when the backend is unavailable.
        """
        validate_identifier(identifier)

        fields = {
            'address': identifier,
            'processed_at': datetime.now(timezone.utc).isoformat(),
        }
        for key, value in (metadata or {}).items():
            if value is not None:
                fields[str(key)] = str(value)

        try:
            added = await self.backend.mark(
                self.processed_key, identifier, self.metadata_key(identifier),
                fields, self.metadata_ttl_seconds
            )
        except BackendUnavailable as e:
            logger.error(f"❌ Could not mark {identifier} as processed: {e}")
            return False

        if added:
            logger.debug(f"💾 Marked {identifier} as processed ({fields.get('reason', 'no reason')})")
        return True

    async def release(self, identifier: str, token: Optional[str]) -> bool:
        """
        Drop the claim on `identifier` if `token` still owns it.

        No-op for a missing, expired or foreign claim. Returns True when the
        call completed (whether or not a claim was deleted), False on outage.
        """
        validate_identifier(identifier)
        if not token:
            return True

        try:
            deleted = await self.backend.release(self.lock_key(identifier), token)
        except BackendUnavailable as e:
            logger.error(f"❌ Could not release claim on {identifier}: {e} (lease will expire)")
            return False

        if deleted:
            logger.debug(f"🔓 Released claim on {identifier}")
        return True

    async def release_claim(self, claim: ClaimResult) -> bool:
        """Release a ClaimResult returned by try_claim()."""
        return await self.release(claim.identifier, claim.token)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def is_processed(self, identifier: str) -> Optional[bool]:
        """Membership query for inspection only. None when the backend is down."""
        validate_identifier(identifier)
        try:
            return await self.backend.is_member(self.processed_key, identifier)
        except BackendUnavailable as e:
            logger.warning(f"⚠️  is_processed({identifier}) failed: {e}")
            return None

    async def count(self) -> Optional[int]:
        """Processed set size. None when the backend is down."""
        try:
            return await self.backend.cardinality(self.processed_key)
        except BackendUnavailable as e:
            logger.warning(f"⚠️  Could not read processed count: {e}")
            return None

    async def metadata(self, identifier: str) -> Optional[Dict[str, str]]:
        """Audit record for `identifier` ({} when expired or never written)."""
        validate_identifier(identifier)
        try:
            return await self.backend.get_fields(self.metadata_key(identifier))
        except BackendUnavailable as e:
            logger.warning(f"⚠️  Could not read metadata for {identifier}: {e}")
            return None

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def prune(self) -> Optional[int]:
        """
        Remove processed identifiers whose metadata record has expired.

        Pruned identifiers become claimable again. Never called implicitly.
        The metadata check and the removal are one atomic step per member,
        so a concurrent mark_processed() is never undone.
        """
        removed = 0
        try:
            for member in await self.backend.members(self.processed_key):
                if await self.backend.remove_if_missing(self.processed_key, member,
                                                        self.metadata_key(member)):
                    removed += 1
        except BackendUnavailable as e:
            logger.error(f"❌ Prune failed: {e}")
            return None

        logger.info(f"🧹 Pruned {removed} expired entries from {self.processed_key}")
        return removed

    async def clear_claims(self) -> Optional[int]:
        """Delete every live claim in this namespace."""
        try:
            cleared = await self.backend.delete_prefix(f"lock:{self.namespace}:")
        except BackendUnavailable as e:
            logger.error(f"❌ Could not clear claims: {e}")
            return None

        if cleared:
            logger.info(f"🧹 Cleared {cleared} claims in namespace {self.namespace}")
        return cleared

    async def ping(self) -> bool:
        return await self.backend.ping()

    async def close(self):
        await self.backend.close()

    def get_stats(self) -> Dict:
        return {
            'namespace': self.namespace,
            'lease_seconds': self.lease_seconds,
            'fail_open': self.fail_open,
            **self.stats,
        }
