"""
Claim outcomes returned by DedupStore.try_claim().
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ClaimStatus(Enum):
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    PROCESSED = "processed"
    UNAVAILABLE = "unavailable"


@dataclass
class ClaimResult:
    """
    Result of a claim attempt.

    `proceed` is the only field the polling loop needs: True when the caller
    holds the claim, or when the backend is down and the store runs fail-open.
    """
    identifier: str
    status: ClaimStatus
    token: Optional[str] = None
    acquired_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    proceed: bool = False
    error: Optional[str] = None

    @property
    def claimed(self) -> bool:
        return self.status is ClaimStatus.CLAIMED

    @property
    def degraded(self) -> bool:
        return self.status is ClaimStatus.UNAVAILABLE
