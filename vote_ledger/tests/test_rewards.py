"""
Unit Tests for the Reward Calculator

Tests cover:
1. Base amounts for regular and verified votes
2. Streak bonus gating and cap
3. Territory bonus
4. Weekly token cap clamp
"""

from vote_ledger.config import LedgerSettings
from vote_ledger.models import VoteKind
from vote_ledger.rewards import apply_weekly_token_cap, calculate_reward, compute_reward, streak_bonus

SETTINGS = LedgerSettings()


class TestBaseReward:
    """Tests for base amounts."""

    def test_regular_vote_without_bonus(self):
        """A regular vote that is not the first of the day earns the base amount."""
        assert compute_reward(VoteKind.REGULAR, 7, False, False, SETTINGS) == 10

    def test_verified_vote_without_bonus(self):
        """A verified vote earns the higher base amount."""
        assert compute_reward(VoteKind.VERIFIED, 7, False, False, SETTINGS) == 30


class TestStreakBonus:
    """Tests for the streak bonus."""

    def test_bonus_grows_with_streak(self):
        assert streak_bonus(1, SETTINGS) == 1
        assert streak_bonus(5, SETTINGS) == 5

    def test_bonus_is_capped(self):
        """Streaks beyond the top tier earn the maximum bonus."""
        assert streak_bonus(10, SETTINGS) == 10
        assert streak_bonus(45, SETTINGS) == 10

    def test_bonus_only_on_first_vote_of_day(self):
        """Same-day follow-up votes never carry a streak bonus."""
        first = calculate_reward(VoteKind.REGULAR, 4, True, False, SETTINGS)
        later = calculate_reward(VoteKind.REGULAR, 4, False, False, SETTINGS)

        assert first.streak_bonus == 4
        assert first.total == 14
        assert later.streak_bonus == 0
        assert later.total == 10

    def test_zero_streak_has_no_bonus(self):
        assert compute_reward(VoteKind.REGULAR, 0, True, False, SETTINGS) == 10


class TestTerritoryBonus:
    """Tests for the contested-zone bonus."""

    def test_territory_bonus_is_additive(self):
        breakdown = calculate_reward(VoteKind.VERIFIED, 3, True, True, SETTINGS)

        assert breakdown.base == 30
        assert breakdown.streak_bonus == 3
        assert breakdown.territory_bonus == 5
        assert breakdown.total == 38

    def test_custom_amounts(self):
        """Amounts come from configuration."""
        settings = LedgerSettings(regular_vote_reward=2, territory_bonus=1, max_streak_bonus=3)
        assert compute_reward(VoteKind.REGULAR, 9, True, True, settings) == 6


class TestWeeklyTokenCap:
    """Tests for the optional weekly token cap."""

    def test_cap_disabled_by_default(self):
        breakdown = calculate_reward(VoteKind.VERIFIED, 0, False, False, SETTINGS)
        assert apply_weekly_token_cap(breakdown, 10_000, SETTINGS) == breakdown

    def test_reward_clamped_to_remaining_allowance(self):
        settings = LedgerSettings(weekly_token_cap=200)
        breakdown = calculate_reward(VoteKind.VERIFIED, 0, False, False, settings)

        capped = apply_weekly_token_cap(breakdown, 185, settings)

        assert capped.total == 15
        assert capped.weekly_cap_reduction == 15
        assert capped.base == 30

    def test_exhausted_allowance_yields_zero(self):
        """The reward never goes negative."""
        settings = LedgerSettings(weekly_token_cap=200)
        breakdown = calculate_reward(VoteKind.REGULAR, 0, False, False, settings)

        assert apply_weekly_token_cap(breakdown, 250, settings).total == 0

    def test_reward_within_allowance_untouched(self):
        settings = LedgerSettings(weekly_token_cap=200)
        breakdown = calculate_reward(VoteKind.REGULAR, 0, False, False, settings)

        assert apply_weekly_token_cap(breakdown, 50, settings).total == 10
