from .config import LedgerSettings
from .models import RewardBreakdown, VoteKind


def streak_bonus(streak: int, settings: LedgerSettings) -> int:
    return max(0, min(streak * settings.streak_bonus_per_day, settings.max_streak_bonus))


def calculate_reward(
    kind: VoteKind,
    streak: int,
    first_vote_of_day: bool,
    territory_bonus_active: bool,
    settings: LedgerSettings,
) -> RewardBreakdown:
    """
    Token reward for one vote.

    The streak bonus is paid only on the user's first vote of the day. The
    ledger passes whether that vote actually advanced the streak, so an
    out-of-order day earns no bonus. Pure: no I/O, no clock.
    """
    base = settings.verified_vote_reward if kind == VoteKind.VERIFIED else settings.regular_vote_reward
    bonus = streak_bonus(streak, settings) if first_vote_of_day else 0
    territory = settings.territory_bonus if territory_bonus_active else 0
    return RewardBreakdown(
        base=base,
        streak_bonus=bonus,
        territory_bonus=territory,
        total=max(0, base + bonus + territory),
    )


def compute_reward(
    kind: VoteKind,
    streak: int,
    first_vote_of_day: bool,
    territory_bonus_active: bool,
    settings: LedgerSettings,
) -> int:
    return calculate_reward(kind, streak, first_vote_of_day, territory_bonus_active, settings).total


def apply_weekly_token_cap(
    breakdown: RewardBreakdown, earned_this_week: int, settings: LedgerSettings
) -> RewardBreakdown:
    if settings.weekly_token_cap is None:
        return breakdown
    remaining = max(0, settings.weekly_token_cap - earned_this_week)
    if breakdown.total <= remaining:
        return breakdown
    return breakdown.model_copy(update={
        "weekly_cap_reduction": breakdown.total - remaining,
        "total": remaining,
    })
