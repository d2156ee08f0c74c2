"""Error taxonomy shared by the order engine, its service facade and the API.

Each error carries a stable ``code`` and a ``user_action`` telling the caller
which kind of message to show: fix the input, try again, contact support, or
nothing at all (a payment the customer cancelled).
"""

from __future__ import annotations

from typing import Literal

UserAction = Literal["fix_input", "try_again", "contact_support", "none"]


class OrderError(Exception):
    code = "order_error"
    user_action: UserAction = "contact_support"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "detail": self.message,
            "user_action": self.user_action,
            "retryable": self.retryable,
        }


class ValidationError(OrderError):
    code = "validation_error"
    user_action: UserAction = "fix_input"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["field"] = self.field
        return data


class InvalidTransition(OrderError):
    code = "invalid_transition"
    user_action: UserAction = "contact_support"

    def __init__(self, message: str, from_state: str | None = None, to_state: str | None = None):
        super().__init__(message)
        self.from_state = from_state
        self.to_state = to_state


class NotFoundError(OrderError):
    code = "not_found"
    user_action: UserAction = "fix_input"


class PersistenceError(OrderError):
    code = "persistence_error"
    user_action: UserAction = "try_again"
    retryable = True


class ConcurrencyError(PersistenceError):
    code = "concurrent_update"


class PaymentError(OrderError):
    code = "payment_error"
    user_action: UserAction = "try_again"
    retryable = True

    def __init__(self, message: str, cancelled: bool = False):
        super().__init__(message)
        self.cancelled = cancelled
        if cancelled:
            self.code = "payment_cancelled"
            self.user_action = "none"
            self.retryable = False


class InvariantViolation(AssertionError):
    """Totals on an order disagree with each other.

    Deliberately not an ``OrderError``: it must never be folded into a
    result value or retried.
    """
