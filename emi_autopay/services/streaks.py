"""Payment streaks and the admin-managed milestone configuration"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from emi_autopay.domain import streaks as rules
from emi_autopay.domain.exceptions import StreakConfigError, StreakConfigNotFoundError, UserNotFoundError, ValidationError
from emi_autopay.domain.models import StreakMilestone, StreakState, TransactionType
from emi_autopay.infrastructure.database.models import StreakConfig, StreakMilestoneConfig
from emi_autopay.infrastructure.database.repositories import (
    StreakAchievementRepository,
    StreakConfigRepository,
    UserRepository,
)
from emi_autopay.services.wallet import WalletService
from emi_autopay.utils.date_utils import local_today

logger = logging.getLogger(__name__)


class StreakConfigService:
    """
    The one streak configuration entity.

    No upserts: create fails when a config exists, everything else fails
    when it does not. Mutations flush; the caller commits.
    """

    def __init__(self, db: Session):
        self.db = db
        self.repo = StreakConfigRepository(db)

    def get_config(self) -> StreakConfig:
        config = self.repo.get()
        if config is None:
            raise StreakConfigNotFoundError("Streak configuration has not been created")
        return config

    def find_config(self) -> Optional[StreakConfig]:
        return self.repo.get()

    def create_config(self, milestones: List[StreakMilestone], enabled: bool = False, updated_by: Optional[str] = None) -> StreakConfig:
        if self.repo.get() is not None:
            raise StreakConfigError("Streak configuration already exists")
        _check_unique_days(milestones)
        for m in milestones:
            _check_milestone(m.days, m.reward_cents)

        config = self.repo.create_config(enabled=enabled, updated_by=updated_by)
        for m in milestones:
            self.repo.add_milestone(config, m.days, m.reward_cents, m.badge, m.description, m.is_active)
        return config

    def update_config(
        self,
        milestones: Optional[List[StreakMilestone]] = None,
        enabled: Optional[bool] = None,
        updated_by: Optional[str] = None,
    ) -> StreakConfig:
        """Replace the milestone table and/or flip the flag on the existing config"""
        config = self.get_config()
        if milestones is not None:
            _check_unique_days(milestones)
            for m in milestones:
                _check_milestone(m.days, m.reward_cents)
            config.milestones.clear()
            self.db.flush()
            for m in milestones:
                self.repo.add_milestone(config, m.days, m.reward_cents, m.badge, m.description, m.is_active)
        if enabled is not None:
            config.enabled = enabled
        config.updated_by = updated_by
        self.db.flush()
        return config

    def set_enabled(self, enabled: bool, updated_by: Optional[str] = None) -> StreakConfig:
        config = self.get_config()
        config.enabled = enabled
        config.updated_by = updated_by
        self.db.flush()
        return config

    def add_milestone(self, milestone: StreakMilestone, updated_by: Optional[str] = None) -> StreakMilestoneConfig:
        config = self.get_config()
        _check_milestone(milestone.days, milestone.reward_cents)
        if any(m.days == milestone.days for m in config.milestones):
            raise StreakConfigError(
                f"A milestone for {milestone.days} days already exists",
                {"days": milestone.days},
            )
        config.updated_by = updated_by
        return self.repo.add_milestone(
            config, milestone.days, milestone.reward_cents, milestone.badge, milestone.description, milestone.is_active
        )

    def update_milestone(self, days: int, updated_by: Optional[str] = None, **changes: Any) -> StreakMilestoneConfig:
        config = self.get_config()
        milestone = _find_milestone(config, days)
        allowed = {"reward_cents", "badge", "description", "is_active"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError("Unknown milestone fields", {"fields": sorted(unknown)})
        if changes.get("reward_cents") is not None:
            _check_milestone(days, changes["reward_cents"])

        for key, value in changes.items():
            if value is not None:
                setattr(milestone, key, value)
        config.updated_by = updated_by
        self.db.flush()
        return milestone

    def delete_milestone(self, days: int, updated_by: Optional[str] = None) -> None:
        config = self.get_config()
        milestone = _find_milestone(config, days)
        config.milestones.remove(milestone)
        config.updated_by = updated_by
        self.db.flush()

    def delete_config(self) -> None:
        self.repo.delete_config(self.get_config())

    def active_milestones(self) -> List[StreakMilestone]:
        """Milestones that can pay out right now; empty when the system is off or unconfigured"""
        config = self.repo.get()
        if config is None or not config.enabled:
            return []
        return rules.active_milestones(_to_domain(m) for m in config.milestones)


class StreakService:
    def __init__(self, db: Session, wallet: WalletService, config: StreakConfigService):
        self.db = db
        self.wallet = wallet
        self.config = config
        self.users = UserRepository(db)
        self.achievements = StreakAchievementRepository(db)

    def update_payment_streak(self, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Count ``today`` as a successful autopay day and pay out at most one milestone.

        Does not commit.
        """
        today = today or local_today()
        user = self.users.get_for_update(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        state = StreakState(
            current=user.streak_current,
            longest=user.streak_longest,
            last_paid_date=user.streak_last_paid_date,
        )
        updated = rules.advance_streak(state, today)
        user.streak_current = updated.current
        user.streak_longest = updated.longest
        user.streak_last_paid_date = updated.last_paid_date
        # add_money re-reads the locked user row
        self.db.flush()

        reward = None
        milestone = rules.find_unmet_milestone(
            updated.current,
            self.config.active_milestones(),
            self.achievements.achieved_days(user_id),
        )
        if milestone is not None:
            # Badge-only milestones are achieved too, so the next one can pay out
            self.achievements.add(user_id, milestone.days, milestone.reward_cents)
            if milestone.reward_cents > 0:
                self.wallet.add_money(
                    user_id,
                    milestone.reward_cents,
                    source=TransactionType.STREAK_REWARD,
                    description=f"{milestone.days}-day streak reward: {milestone.badge}",
                    meta={"days": milestone.days, "badge": milestone.badge},
                )
                user.streak_total_rewards_cents += milestone.reward_cents
            reward = milestone
            logger.info(
                "Streak milestone achieved",
                extra={"user_id": user_id, "days": milestone.days, "reward_cents": milestone.reward_cents},
            )

        self.db.flush()
        return {
            "current": updated.current,
            "longest": updated.longest,
            "milestone": reward,
        }

    def streak_info(self, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        today = today or local_today()
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        state = StreakState(
            current=user.streak_current,
            longest=user.streak_longest,
            last_paid_date=user.streak_last_paid_date,
        )
        active = rules.is_streak_active(state, today)
        current = state.current if active else 0
        upcoming = rules.next_milestone(current, self.config.active_milestones())
        return {
            "current": current,
            "longest": state.longest,
            "last_paid_date": state.last_paid_date,
            "is_active": active,
            "total_rewards_cents": user.streak_total_rewards_cents,
            "next_milestone": upcoming,
            "days_to_next_milestone": upcoming.days - current if upcoming else None,
            "milestones_achieved": [
                {"days": a.days, "reward_cents": a.reward_cents, "achieved_at": a.achieved_at}
                for a in self.achievements.list_for_user(user_id)
            ],
        }


def _to_domain(row: StreakMilestoneConfig) -> StreakMilestone:
    return StreakMilestone(
        days=row.days,
        reward_cents=row.reward_cents,
        badge=row.badge,
        description=row.description or "",
        is_active=row.is_active,
    )


def _find_milestone(config: StreakConfig, days: int) -> StreakMilestoneConfig:
    for milestone in config.milestones:
        if milestone.days == days:
            return milestone
    raise StreakConfigNotFoundError(f"No milestone for {days} days", {"days": days})


def _check_unique_days(milestones: List[StreakMilestone]) -> None:
    days = [m.days for m in milestones]
    if len(days) != len(set(days)):
        raise ValidationError("Milestone days must be unique", {"days": days})


def _check_milestone(days: int, reward_cents: int) -> None:
    if days < 1:
        raise ValidationError("Milestone days must be positive", {"days": days})
    if reward_cents < 0:
        raise ValidationError("Milestone reward cannot be negative", {"reward_cents": reward_cents})
