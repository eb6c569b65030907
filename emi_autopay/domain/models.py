"""Domain models - pure Python dataclasses and enums representing business entities"""

import enum
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ScheduleStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SKIPPED = "SKIPPED"


class PaymentMethod(str, enum.Enum):
    GATEWAY = "GATEWAY"
    WALLET = "WALLET"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AutopayOutcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class TransactionType(str, enum.Enum):
    INSTALLMENT_PAYMENT = "INSTALLMENT_PAYMENT"
    COMMISSION = "COMMISSION"
    COMMISSION_LOCKED = "COMMISSION_LOCKED"
    DEPOSIT = "DEPOSIT"
    STREAK_REWARD = "STREAK_REWARD"
    ADMIN_CREDIT = "ADMIN_CREDIT"
    BONUS = "BONUS"


class WalletPool(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    LOCKED = "LOCKED"


@dataclass
class Installment:
    """Single day in a payment schedule"""

    installment_number: int
    due_date: date
    amount_cents: int


@dataclass
class DeliveryAddress:
    name: str
    phone: str
    line1: str
    city: str
    state: str
    pincode: str
    line2: Optional[str] = None


@dataclass
class ProductSnapshot:
    """Price and commission data captured from the catalog at order time"""

    product_id: str
    name: str
    price_cents: int
    commission_percentage: Optional[float] = None


@dataclass
class ReferralAssignment:
    """Resolved referrer for an order, supplied by the referral subsystem"""

    referrer_id: str
    commission_percentage: Optional[float] = None


@dataclass
class PaymentProof:
    """Confirmation of the first installment.

    GATEWAY proofs carry the opaque, already-verified gateway reference;
    WALLET proofs trigger a wallet deduction.
    """

    method: PaymentMethod
    gateway_reference: Optional[str] = None


@dataclass
class CommissionSplit:
    total_cents: int
    available_cents: int
    locked_cents: int


@dataclass
class CommissionResult:
    calculated: bool
    amount_cents: int = 0
    percentage: float = 0.0
    available_cents: int = 0
    locked_cents: int = 0
    reason: Optional[str] = None


@dataclass
class PaymentOutcome:
    """Result of one installment attempt"""

    status: AutopayOutcome
    order_id: str
    amount_cents: int = 0
    installment_number: Optional[int] = None
    payment_id: Optional[str] = None
    new_balance_cents: Optional[int] = None
    order_completed: bool = False
    reason: Optional[str] = None
    commission: Optional[CommissionResult] = None

    @property
    def success(self) -> bool:
        return self.status == AutopayOutcome.SUCCESS


@dataclass
class UserRunResult:
    """Per-user aggregate of one autopay batch run"""

    user_id: str
    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    insufficient_balance: int = 0
    total_amount_paid_cents: int = 0
    new_balance_cents: int = 0
    outcomes: List[PaymentOutcome] = field(default_factory=list)


@dataclass
class BatchRunResult:
    slot_id: str
    run_date: date
    duration_ms: float = 0.0
    users: int = 0
    total_processed: int = 0
    total_success: int = 0
    total_failed: int = 0
    total_skipped: int = 0
    total_insufficient_balance: int = 0
    user_results: List[UserRunResult] = field(default_factory=list)

    def add(self, result: UserRunResult) -> None:
        self.users += 1
        self.total_processed += result.processed
        self.total_success += result.success
        self.total_failed += result.failed
        self.total_skipped += result.skipped
        self.total_insufficient_balance += result.insufficient_balance
        self.user_results.append(result)


@dataclass
class StreakMilestone:
    days: int
    reward_cents: int
    badge: str
    description: str = ""
    is_active: bool = True


@dataclass
class StreakState:
    current: int = 0
    longest: int = 0
    last_paid_date: Optional[date] = None


@dataclass
class ForecastDay:
    date: date
    day_number: int
    start_balance_cents: int
    deduction_cents: int
    end_balance_cents: int
    order_ids: List[str]
    insufficient_funds: bool
    shortfall_cents: int
