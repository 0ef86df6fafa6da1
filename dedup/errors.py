"""
Dedup store errors.

Only genuine failures are exceptions here. "Already in progress" and
"already processed" are normal claim outcomes and live in models.ClaimStatus.
"""


class DedupError(Exception):
    """Base class for dedup store errors."""


class BackendUnavailable(DedupError):
    """The persistence backend could not be reached or timed out."""


class InvalidIdentifier(DedupError, ValueError):
    """Identifier is empty or malformed. Rejected before any backend call."""
