"""Exception hierarchy for the loan collection core."""

from decimal import Decimal
from typing import Any, Dict, Optional


class FieldLendingError(Exception):
    """Base exception for all loan collection errors."""

    code = "error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(FieldLendingError):
    """Raised when input is malformed, before any state is touched."""

    code = "validation_error"


class NotFoundError(FieldLendingError):
    """Raised when a referenced loan, agent, branch or holiday does not exist."""

    code = "not_found"


class StateConflictError(FieldLendingError):
    """Raised when an entity is in the wrong state for the operation."""

    code = "state_conflict"


class InvalidScheduleStateError(FieldLendingError):
    """Raised when a repayment schedule cannot be allocated against."""

    code = "invalid_schedule_state"


class BusinessRuleError(FieldLendingError):
    """Raised when a well-formed request breaks a lending rule."""

    code = "business_rule"


class PaymentExceedsBalanceError(BusinessRuleError):
    """Raised when a payment would take the loan past its total amount."""

    code = "payment_exceeds_balance"

    def __init__(self, remaining: Decimal):
        super().__init__(
            f"Payment exceeds outstanding balance of {remaining}",
            {"remaining": str(remaining)}
        )
        self.remaining = remaining


class DefaultingLimitExceededError(BusinessRuleError):
    """Raised when an agent's outstanding dues exceed their defaulting target."""

    code = "defaulting_limit_exceeded"

    def __init__(self, limit: Decimal, outstanding: Decimal):
        super().__init__(
            f"Outstanding dues of {outstanding} exceed the defaulting limit of {limit}",
            {"limit": str(limit), "outstanding": str(outstanding)}
        )
        self.limit = limit
        self.outstanding = outstanding


class NonBusinessDayError(BusinessRuleError):
    """Raised when a payment is recorded on a weekend or holiday."""

    code = "non_business_day"


class RemittanceAlreadyFiledError(BusinessRuleError):
    """Raised when the agent has already closed the books for the day."""

    code = "remittance_already_filed"


class RemittanceExceedsExpectedError(BusinessRuleError):
    """Raised when remitted cash would exceed the expected collection."""

    code = "remittance_exceeds_expected"

    def __init__(self, remaining: Decimal):
        super().__init__(
            f"Amount paid exceeds the expected amount. Remaining: {remaining}",
            {"remaining": str(remaining)}
        )
        self.remaining = remaining


class AuthError(FieldLendingError):
    """Base class for authentication failures."""

    code = "unauthorized"


class UnauthorizedError(AuthError):
    """Raised when no usable credential was presented."""

    code = "unauthorized"


class InvalidTokenError(AuthError):
    """Raised when a bearer token is expired, malformed or badly signed."""

    code = "invalid_token"
