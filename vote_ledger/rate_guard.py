import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .clock import calendar_day
from .config import LedgerSettings
from .models import RejectionReason
from .storage import LedgerTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admission:
    allowed: bool
    reason: Optional[RejectionReason] = None
    detail: str = ""

    @classmethod
    def allow(cls) -> "Admission":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: RejectionReason, detail: str) -> "Admission":
        return cls(allowed=False, reason=reason, detail=detail)


class RateGuard:
    """
    Admissibility rules for a new vote, checked in order:

    1. daily cap per (voter, vendor, UTC day)
    2. distinct vendors per voter in the rolling week
    3. reuse of an attestation fingerprint inside the attestation window

    Reads go through the caller's transaction so the check and the vote
    write share one serialization boundary. The guard never writes.
    """

    def __init__(self, settings: LedgerSettings):
        self.settings = settings

    def admit(
        self,
        tx: LedgerTransaction,
        user_id: str,
        vendor_id: str,
        now: datetime,
        attestation_ref: Optional[str] = None,
    ) -> Admission:
        day = calendar_day(now)
        daily_count = tx.count_votes(user_id, vendor_id, day)
        if daily_count >= self.settings.daily_vote_cap:
            return Admission.deny(
                RejectionReason.DAILY_CAP_REACHED,
                f"Already voted {daily_count} times for vendor {vendor_id} on {day.isoformat()}",
            )

        week_vendors = tx.vendors_voted_since(user_id, now - self.settings.weekly_window)
        if vendor_id not in week_vendors and len(week_vendors) >= self.settings.weekly_vendor_cap:
            return Admission.deny(
                RejectionReason.WEEKLY_CAP_REACHED,
                f"Already voted for {len(week_vendors)} distinct vendors this week",
            )

        if attestation_ref and tx.attestation_used_since(
            user_id, attestation_ref, now - self.settings.attestation_window
        ):
            logger.warning(f"User {user_id} reused attestation {attestation_ref}")
            return Admission.deny(
                RejectionReason.DUPLICATE_ATTESTATION,
                "Photo has been used before. Please take a new photo.",
            )

        return Admission.allow()
