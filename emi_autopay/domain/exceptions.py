"""Domain-specific exceptions"""

from typing import Any, Dict, Optional


class DomainException(Exception):
    """Base exception for domain layer.

    Every subclass carries a stable machine-readable ``code`` and the HTTP
    status the API layer should answer with.
    """

    code = "DOMAIN_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(DomainException):
    """Malformed or out-of-range request"""

    code = "VALIDATION_ERROR"
    status_code = 400


class UserNotFoundError(DomainException):
    code = "USER_NOT_FOUND"
    status_code = 404

    def __init__(self, user_id: str):
        super().__init__("User not found", {"user_id": str(user_id)})


class OrderNotFoundError(DomainException):
    code = "ORDER_NOT_FOUND"
    status_code = 404

    def __init__(self, order_id: Any):
        super().__init__("Order not found", {"order_id": str(order_id)})


class ProductNotFoundError(DomainException):
    code = "PRODUCT_NOT_FOUND"
    status_code = 404

    def __init__(self, product_id: Any):
        super().__init__("Product not found", {"product_id": str(product_id)})


class InvalidOrderStateError(DomainException):
    """Operation not allowed in the order's current status (e.g. paying a CANCELLED order)"""

    code = "INVALID_ORDER_STATE"
    status_code = 409

    def __init__(self, order_id: Any, status: str, expected: str):
        super().__init__(
            f"Order is {status}, expected {expected}",
            {"order_id": str(order_id), "status": status, "expected": expected},
        )


class InsufficientBalanceError(DomainException):
    """Wallet cannot cover the requested deduction"""

    code = "INSUFFICIENT_BALANCE"
    status_code = 400

    def __init__(self, required: int, available: int):
        super().__init__(
            "Insufficient wallet balance",
            {
                "required_cents": required,
                "available_cents": available,
                "shortfall_cents": required - available,
            },
        )
        self.required = required
        self.available = available


class DuplicatePaymentError(DomainException):
    """Idempotency guard tripped: installment already paid or order already paid today"""

    code = "DUPLICATE_PAYMENT"
    status_code = 409

    def __init__(self, order_id: Any, installment_number: Optional[int] = None, reason: str = ""):
        super().__init__(
            reason or "Payment has already been processed",
            {"order_id": str(order_id), "installment_number": installment_number},
        )


class CommissionCalculationError(DomainException):
    code = "COMMISSION_CALCULATION_FAILED"
    status_code = 500


class StreakConfigError(DomainException):
    """Streak configuration existence invariant violated"""

    code = "STREAK_CONFIG_CONFLICT"
    status_code = 409


class StreakConfigNotFoundError(StreakConfigError):
    code = "STREAK_CONFIG_NOT_FOUND"
    status_code = 404


class NotificationDeliveryError(DomainException):
    """Notification webhook unavailable after retries"""

    code = "NOTIFICATION_DELIVERY_FAILED"
    status_code = 502
