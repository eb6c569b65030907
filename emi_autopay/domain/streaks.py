"""Payment streak rules"""

from datetime import date
from typing import Iterable, List, Optional

from emi_autopay.domain.models import StreakMilestone, StreakState


def advance_streak(state: StreakState, today: date) -> StreakState:
    """
    Apply one successful payment day to a streak.

    - same day as the last payment: unchanged
    - the day after the last payment: current + 1
    - any other gap (or first payment ever): current resets to 1
    """
    if state.last_paid_date == today:
        return state

    if state.last_paid_date is not None and (today - state.last_paid_date).days == 1:
        current = state.current + 1
    else:
        current = 1

    return StreakState(current=current, longest=max(state.longest, current), last_paid_date=today)


def is_streak_active(state: StreakState, today: date) -> bool:
    if state.last_paid_date is None:
        return False
    return (today - state.last_paid_date).days <= 1


def active_milestones(milestones: Iterable[StreakMilestone]) -> List[StreakMilestone]:
    return sorted((m for m in milestones if m.is_active), key=lambda m: m.days)


def find_unmet_milestone(
    current: int,
    milestones: Iterable[StreakMilestone],
    achieved_days: Iterable[int],
) -> Optional[StreakMilestone]:
    """Lowest active milestone the streak has reached but not yet been rewarded for"""
    achieved = set(achieved_days)
    for milestone in active_milestones(milestones):
        if milestone.days <= current and milestone.days not in achieved:
            return milestone
    return None


def next_milestone(current: int, milestones: Iterable[StreakMilestone]) -> Optional[StreakMilestone]:
    for milestone in active_milestones(milestones):
        if current < milestone.days:
            return milestone
    return None
