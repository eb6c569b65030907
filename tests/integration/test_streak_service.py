"""Streak configuration and payout tests"""

import pytest
from datetime import timedelta
from sqlalchemy.orm import Session
from emi_autopay.domain.exceptions import StreakConfigError, StreakConfigNotFoundError, ValidationError
from emi_autopay.domain.models import StreakMilestone
from emi_autopay.infrastructure.database.repositories import StreakAchievementRepository
from emi_autopay.services.container import Services
from tests.constants import TODAY

MILESTONES = [
    StreakMilestone(days=3, reward_cents=1_000, badge="Starter"),
    StreakMilestone(days=7, reward_cents=5_000, badge="Bronze"),
]


def _pay_days(services: Services, user_id: str, days: int):
    results = []
    for n in range(days):
        results.append(services.streaks.update_payment_streak(user_id, TODAY + timedelta(days=n)))
        services.db.commit()
    return results


class TestStreakConfig:
    def test_missing_config(self, services: Services):
        with pytest.raises(StreakConfigNotFoundError):
            services.streak_config.get_config()
        with pytest.raises(StreakConfigNotFoundError):
            services.streak_config.set_enabled(True)
        assert services.streak_config.active_milestones() == []

    def test_create_only_once(self, db: Session, services: Services):
        config = services.streak_config.create_config(MILESTONES, enabled=True, updated_by="admin")
        db.commit()

        assert [m.days for m in config.milestones] == [3, 7]
        assert config.updated_by == "admin"
        with pytest.raises(StreakConfigError):
            services.streak_config.create_config(MILESTONES)

    def test_create_rejects_duplicate_or_negative_milestones(self, services: Services):
        with pytest.raises(ValidationError):
            services.streak_config.create_config(MILESTONES + [StreakMilestone(days=7, reward_cents=1, badge="Again")])
        with pytest.raises(ValidationError):
            services.streak_config.create_config([StreakMilestone(days=5, reward_cents=-1, badge="Bad")])

    def test_disabled_config_has_no_active_milestones(self, db: Session, services: Services):
        services.streak_config.create_config(MILESTONES, enabled=False)
        db.commit()

        assert services.streak_config.active_milestones() == []

        services.streak_config.set_enabled(True)
        db.commit()
        assert [m.days for m in services.streak_config.active_milestones()] == [3, 7]

    def test_milestone_crud(self, db: Session, services: Services):
        services.streak_config.create_config(MILESTONES, enabled=True)
        db.commit()

        services.streak_config.add_milestone(StreakMilestone(days=30, reward_cents=50_000, badge="Gold"))
        services.streak_config.update_milestone(7, reward_cents=6_000, is_active=False)
        services.streak_config.delete_milestone(3)
        db.commit()

        config = services.streak_config.get_config()
        assert [(m.days, m.reward_cents, m.is_active) for m in config.milestones] == [(7, 6_000, False), (30, 50_000, True)]
        assert [m.days for m in services.streak_config.active_milestones()] == [30]

        with pytest.raises(StreakConfigError):
            services.streak_config.add_milestone(StreakMilestone(days=30, reward_cents=1, badge="Dup"))
        with pytest.raises(StreakConfigNotFoundError):
            services.streak_config.update_milestone(99, reward_cents=1)
        with pytest.raises(ValidationError):
            services.streak_config.update_milestone(7, colour="gold")

    def test_update_replaces_milestones(self, db: Session, services: Services):
        services.streak_config.create_config(MILESTONES, enabled=False)
        db.commit()

        services.streak_config.update_config([StreakMilestone(days=14, reward_cents=9_000, badge="Silver")], enabled=True)
        db.commit()

        config = services.streak_config.get_config()
        assert config.enabled
        assert [m.days for m in config.milestones] == [14]

    def test_delete_config(self, db: Session, services: Services):
        services.streak_config.create_config(MILESTONES, enabled=True)
        db.commit()

        services.streak_config.delete_config()
        db.commit()

        assert services.streak_config.find_config() is None


class TestPaymentStreak:
    def test_streak_counts_without_config_but_pays_nothing(self, services: Services, make_user):
        make_user("buyer")

        results = _pay_days(services, "buyer", 5)

        assert [r["current"] for r in results] == [1, 2, 3, 4, 5]
        assert all(r["milestone"] is None for r in results)
        assert services.wallet.get_balance("buyer")["available_cents"] == 0

    def test_milestone_credited_once(self, db: Session, services: Services, make_user):
        make_user("buyer")
        services.streak_config.create_config(MILESTONES, enabled=True)
        db.commit()

        results = _pay_days(services, "buyer", 8)

        rewarded = [(r["current"], r["milestone"].days) for r in results if r["milestone"]]
        assert rewarded == [(3, 3), (7, 7)]
        assert services.wallet.get_balance("buyer")["available_cents"] == 6_000
        info = services.streaks.streak_info("buyer", TODAY + timedelta(days=7))
        assert info["total_rewards_cents"] == 6_000
        assert [a["days"] for a in info["milestones_achieved"]] == [3, 7]

    def test_broken_streak_does_not_pay_again(self, db: Session, services: Services, make_user):
        make_user("buyer")
        services.streak_config.create_config(MILESTONES, enabled=True)
        db.commit()

        _pay_days(services, "buyer", 3)
        again = services.streaks.update_payment_streak("buyer", TODAY + timedelta(days=5))
        db.commit()
        for n in range(6, 8):
            again = services.streaks.update_payment_streak("buyer", TODAY + timedelta(days=n))
            db.commit()

        assert again["current"] == 3
        assert again["longest"] == 3
        assert again["milestone"] is None
        assert StreakAchievementRepository(db).achieved_days("buyer") == [3]

    def test_same_day_counts_once(self, db: Session, services: Services, make_user):
        make_user("buyer")

        services.streaks.update_payment_streak("buyer", TODAY)
        result = services.streaks.update_payment_streak("buyer", TODAY)

        assert result["current"] == 1

    def test_badge_only_milestone_does_not_block_later_rewards(self, db: Session, services: Services, make_user):
        make_user("buyer")
        services.streak_config.create_config(
            [
                StreakMilestone(days=1, reward_cents=0, badge="Hello"),
                StreakMilestone(days=2, reward_cents=1_000, badge="Two in a row"),
            ],
            enabled=True,
        )
        db.commit()

        results = _pay_days(services, "buyer", 3)

        assert [r["milestone"].days if r["milestone"] else None for r in results] == [1, 2, None]
        assert services.wallet.get_balance("buyer")["available_cents"] == 1_000
        assert sorted(StreakAchievementRepository(db).achieved_days("buyer")) == [1, 2]
        info = services.streaks.streak_info("buyer", TODAY + timedelta(days=2))
        assert info["total_rewards_cents"] == 1_000

    def test_streak_info_resets_after_missed_day(self, services: Services, make_user):
        make_user("buyer")
        _pay_days(services, "buyer", 2)

        today = services.streaks.streak_info("buyer", TODAY + timedelta(days=2))
        later = services.streaks.streak_info("buyer", TODAY + timedelta(days=3))

        assert today["current"] == 2
        assert today["is_active"]
        assert later["current"] == 0
        assert later["longest"] == 2
        assert not later["is_active"]
