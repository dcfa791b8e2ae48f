"""
Unit Tests for the Rate Guard

Tests cover:
1. Daily cap per (voter, vendor, day)
2. Weekly distinct-vendor cap
3. Duplicate attestation window
4. Rule order
"""

import pytest

from vote_ledger.config import LedgerSettings
from vote_ledger.errors import VoteRejectedError
from vote_ledger.models import RejectionReason, SubmitVoteRequest
from vote_ledger.rate_guard import RateGuard
from vote_ledger.service import VoteLedgerService


def vote(vendor="vendor-1", verified=False, attestation=None, user="alice"):
    return SubmitVoteRequest(user_id=user, vendor_id=vendor, verified=verified, attestation_ref=attestation)


class TestDailyCap:
    """Tests for the per-vendor daily cap."""

    def test_fourth_vote_same_day_rejected(self, service):
        for _ in range(3):
            service.submit_vote(vote())

        with pytest.raises(VoteRejectedError) as exc_info:
            service.submit_vote(vote())

        assert exc_info.value.reason == RejectionReason.DAILY_CAP_REACHED

    def test_cap_is_per_vendor(self, service):
        """Another vendor is still open once one vendor is capped."""
        for _ in range(3):
            service.submit_vote(vote("vendor-1"))

        result = service.submit_vote(vote("vendor-2"))

        assert result.reward == 10

    def test_cap_is_per_voter(self, service):
        for _ in range(3):
            service.submit_vote(vote())

        assert service.submit_vote(vote(user="bob")).vote.voter_id == "bob"

    def test_cap_resets_next_day(self, service, clock):
        for _ in range(3):
            service.submit_vote(vote())
        clock.advance(days=1)

        result = service.submit_vote(vote())

        assert result.vote.day_sequence == 1

    def test_configured_cap(self, storage, clock):
        service = VoteLedgerService(storage, LedgerSettings(daily_vote_cap=1), clock=clock)
        service.submit_vote(vote())

        with pytest.raises(VoteRejectedError):
            service.submit_vote(vote())


class TestWeeklyCap:
    """Tests for the rolling-week distinct vendor cap."""

    @pytest.fixture
    def service(self, storage, clock):
        return VoteLedgerService(storage, LedgerSettings(weekly_vendor_cap=2), clock=clock)

    def test_new_vendor_over_cap_rejected(self, service):
        service.submit_vote(vote("vendor-1"))
        service.submit_vote(vote("vendor-2"))

        with pytest.raises(VoteRejectedError) as exc_info:
            service.submit_vote(vote("vendor-3"))

        assert exc_info.value.reason == RejectionReason.WEEKLY_CAP_REACHED

    def test_known_vendor_still_allowed(self, service):
        """Votes for vendors already counted this week do not grow the set."""
        service.submit_vote(vote("vendor-1"))
        service.submit_vote(vote("vendor-2"))

        assert service.submit_vote(vote("vendor-1")).vote.day_sequence == 2

    def test_window_rolls(self, service, clock):
        service.submit_vote(vote("vendor-1"))
        service.submit_vote(vote("vendor-2"))
        clock.advance(days=7, seconds=1)

        assert service.submit_vote(vote("vendor-3")).reward > 0


class TestDuplicateAttestation:
    """Tests for attestation reuse."""

    def test_reused_photo_rejected(self, service):
        service.submit_vote(vote("vendor-1", verified=True, attestation="sha256:abc"))

        with pytest.raises(VoteRejectedError) as exc_info:
            service.submit_vote(vote("vendor-2", verified=True, attestation="sha256:abc"))

        assert exc_info.value.reason == RejectionReason.DUPLICATE_ATTESTATION

    def test_reuse_after_window_allowed(self, service, clock):
        service.submit_vote(vote("vendor-1", verified=True, attestation="sha256:abc"))
        clock.advance(hours=25)

        result = service.submit_vote(vote("vendor-2", verified=True, attestation="sha256:abc"))

        assert result.vote.verified is True

    def test_other_user_may_share_fingerprint(self, service):
        service.submit_vote(vote(verified=True, attestation="sha256:abc"))

        assert service.submit_vote(vote(verified=True, attestation="sha256:abc", user="bob")).reward >= 30


class TestRateGuardDirect:
    """Tests for the guard in isolation."""

    def test_daily_cap_checked_first(self, service, storage, settings, clock):
        """A capped vendor reports the daily cap even when the attestation is reused too."""
        service.submit_vote(vote(verified=True, attestation="sha256:abc"))
        service.submit_vote(vote())
        service.submit_vote(vote())

        guard = RateGuard(settings)
        with storage.transaction("alice") as tx:
            admission = guard.admit(tx, "alice", "vendor-1", clock(), "sha256:abc")

        assert admission.allowed is False
        assert admission.reason == RejectionReason.DAILY_CAP_REACHED

    def test_guard_never_writes(self, storage, settings, clock):
        guard = RateGuard(settings)
        with storage.transaction("alice") as tx:
            assert guard.admit(tx, "alice", "vendor-1", clock()).allowed is True

        assert storage.votes == {}
        assert storage.user_states == {}
