"""Explicit wiring of the per-session service graph"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from emi_autopay.infrastructure.clients.notifications import NotificationClient
from emi_autopay.services.autopay import AutopayService
from emi_autopay.services.notifications import NotificationService
from emi_autopay.services.orders import OrderService
from emi_autopay.services.payments import PaymentEngine
from emi_autopay.services.streaks import StreakConfigService, StreakService
from emi_autopay.services.wallet import WalletService


@dataclass
class Services:
    db: Session
    orders: OrderService
    wallet: WalletService
    payments: PaymentEngine
    autopay: AutopayService
    streaks: StreakService
    streak_config: StreakConfigService
    notifications: NotificationService


def build_services(db: Session, notifier: Optional[NotificationClient] = None) -> Services:
    """All services bound to one session"""
    wallet = WalletService(db)
    orders = OrderService(db)
    streak_config = StreakConfigService(db)
    streaks = StreakService(db, wallet, streak_config)
    return Services(
        db=db,
        orders=orders,
        wallet=wallet,
        payments=PaymentEngine(db, orders, wallet),
        autopay=AutopayService(db, orders, wallet, streaks),
        streaks=streaks,
        streak_config=streak_config,
        notifications=NotificationService(db, notifier),
    )
