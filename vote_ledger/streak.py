import logging
from dataclasses import dataclass
from datetime import date, timedelta

from .models import StreakStatus, UserLedgerState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreakUpdate:
    new_streak: int
    advanced: bool


def advance_if_first_vote_of_day(state: UserLedgerState, vote_day: date) -> StreakUpdate:
    """
    Apply the day-transition rules to ``state`` in place.

    Must be called inside the same unit of work that writes the vote, and
    only for the user's first vote of ``vote_day``.
    """
    last_day = state.last_streak_day

    if last_day is None:
        state.streak = 1
    elif vote_day == last_day:
        return StreakUpdate(new_streak=state.streak, advanced=False)
    elif vote_day < last_day:
        logger.warning(
            f"Out-of-order vote day {vote_day.isoformat()} for user {state.user_id} "
            f"(last streak day {last_day.isoformat()}); streak left at {state.streak}"
        )
        return StreakUpdate(new_streak=state.streak, advanced=False)
    elif vote_day == last_day + timedelta(days=1):
        state.streak += 1
    else:
        state.streak = 1

    state.last_streak_day = vote_day
    return StreakUpdate(new_streak=state.streak, advanced=True)


def effective_streak(state: UserLedgerState, today: date) -> int:
    """Stored streak, or 0 once a full calendar day has passed without a vote."""
    if state.last_streak_day is None or state.last_streak_day < today - timedelta(days=1):
        return 0
    return state.streak


def streak_status(state: UserLedgerState, today: date) -> StreakStatus:
    streak = effective_streak(state, today)
    return StreakStatus(
        user_id=state.user_id,
        streak=streak,
        last_streak_day=state.last_streak_day,
        voted_today=state.last_streak_day == today,
        active=streak > 0,
    )
