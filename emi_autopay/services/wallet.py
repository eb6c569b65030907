"""Wallet ledger: balances, deductions, commission credits and top-ups.

None of these methods commit. Each mutation locks the user row, re-reads the
balance and appends its ledger entries in the caller's unit of work.
"""

from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from emi_autopay.config import settings
from emi_autopay.domain.commission import split_commission
from emi_autopay.domain.exceptions import InsufficientBalanceError, UserNotFoundError, ValidationError
from emi_autopay.domain.models import CommissionSplit, TransactionType, WalletPool
from emi_autopay.infrastructure.database.models import User, WalletTransaction
from emi_autopay.infrastructure.database.repositories import UserRepository, WalletTransactionRepository

CREDIT_TYPES = {
    TransactionType.DEPOSIT,
    TransactionType.ADMIN_CREDIT,
    TransactionType.BONUS,
    TransactionType.STREAK_REWARD,
}


class WalletService:
    def __init__(self, db: Session):
        self.db = db
        self.users = UserRepository(db)
        self.transactions = WalletTransactionRepository(db)

    def _lock_user(self, user_id: str) -> User:
        user = self.users.get_for_update(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def get_balance(self, user_id: str) -> Dict[str, int]:
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return {
            "available_cents": user.balance_cents,
            "locked_cents": user.hold_balance_cents,
            "total_cents": user.balance_cents + user.hold_balance_cents,
            "referral_bonus_cents": user.referral_bonus_cents,
        }

    def deduct(
        self,
        user_id: str,
        amount_cents: int,
        description: str,
        meta: Optional[Dict[str, Any]] = None,
        reserve_cents: int = 0,
    ) -> WalletTransaction:
        """
        Take ``amount_cents`` out of the withdrawable balance.

        ``reserve_cents`` is kept untouchable (the autopay minimum balance
        lock). Raises InsufficientBalanceError without touching the wallet
        when the balance above the reserve is short.
        """
        if amount_cents <= 0:
            raise ValidationError("Deduction amount must be positive", {"amount_cents": amount_cents})

        user = self._lock_user(user_id)
        available = max(0, user.balance_cents - reserve_cents)
        if available < amount_cents:
            raise InsufficientBalanceError(required=amount_cents, available=available)

        user.balance_cents -= amount_cents
        return self.transactions.append(
            user_id=user_id,
            type=TransactionType.INSTALLMENT_PAYMENT,
            pool=WalletPool.AVAILABLE,
            amount_cents=-amount_cents,
            balance_after_cents=user.balance_cents,
            description=description,
            meta=meta,
        )

    def credit_commission(
        self,
        referrer_id: str,
        total_cents: int,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Tuple[CommissionSplit, List[WalletTransaction]]:
        """
        Credit a referral commission, split between the two pools.

        The withdrawable share goes to ``balance``, the locked share to
        ``hold_balance``; the lifetime total is tracked in
        ``referral_bonus``. One ledger row per pool.
        """
        split = split_commission(total_cents, settings.locked_commission_percentage)
        user = self._lock_user(referrer_id)

        user.balance_cents += split.available_cents
        user.hold_balance_cents += split.locked_cents
        user.referral_bonus_cents += split.total_cents

        entries = [
            self.transactions.append(
                user_id=referrer_id,
                type=TransactionType.COMMISSION,
                pool=WalletPool.AVAILABLE,
                amount_cents=split.available_cents,
                balance_after_cents=user.balance_cents,
                description="Referral commission",
                meta=meta,
            ),
            self.transactions.append(
                user_id=referrer_id,
                type=TransactionType.COMMISSION_LOCKED,
                pool=WalletPool.LOCKED,
                amount_cents=split.locked_cents,
                balance_after_cents=user.hold_balance_cents,
                description="Referral commission (locked)",
                meta=meta,
            ),
        ]
        return split, entries

    def add_money(
        self,
        user_id: str,
        amount_cents: int,
        source: TransactionType = TransactionType.DEPOSIT,
        description: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> WalletTransaction:
        """Unconditional credit to the withdrawable balance"""
        if amount_cents <= 0:
            raise ValidationError("Amount must be positive", {"amount_cents": amount_cents})
        if source not in CREDIT_TYPES:
            raise ValidationError("Unsupported credit source", {"source": source.value})

        user = self._lock_user(user_id)
        user.balance_cents += amount_cents
        return self.transactions.append(
            user_id=user_id,
            type=source,
            pool=WalletPool.AVAILABLE,
            amount_cents=amount_cents,
            balance_after_cents=user.balance_cents,
            description=description or source.value.replace("_", " ").title(),
            meta=meta,
        )

    def list_transactions(
        self,
        user_id: str,
        type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[WalletTransaction], int]:
        if self.users.get(user_id) is None:
            raise UserNotFoundError(user_id)
        return self.transactions.list_for_user(user_id, type=type, limit=limit, offset=offset)

    def commission_summary(self, referrer_id: str) -> Dict[str, int]:
        user = self.users.get(referrer_id)
        if user is None:
            raise UserNotFoundError(referrer_id)

        totals = self.transactions.totals_by_type(
            referrer_id,
            [TransactionType.COMMISSION.value, TransactionType.COMMISSION_LOCKED.value],
        )
        available, count = totals.get(TransactionType.COMMISSION.value, (0, 0))
        locked, _ = totals.get(TransactionType.COMMISSION_LOCKED.value, (0, 0))
        return {
            "total_commission_cents": user.referral_bonus_cents,
            "available_commission_cents": available,
            "locked_commission_cents": locked,
            "commission_count": count,
            "hold_balance_cents": user.hold_balance_cents,
        }
