"""
Operation Results

Typed result-or-failure values returned by the service boundary so that
request handlers never have to catch core exceptions.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

from .exceptions import FieldLendingError


T = TypeVar("T")


@dataclass
class OperationError:
    """Failure description handed to the transport layer"""
    code: str
    message: str
    category: str
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, error: FieldLendingError) -> 'OperationError':
        # Category is the first class below the base error, e.g. "BusinessRuleError"
        category = type(error).__name__
        for klass in type(error).__mro__:
            if FieldLendingError in klass.__bases__:
                category = klass.__name__
                break
        return cls(
            code=error.code,
            message=error.message,
            category=category,
            details=dict(error.details)
        )


@dataclass
class OperationResult(Generic[T]):
    """Either a value or an error, never both"""
    value: Optional[T] = None
    error: Optional[OperationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> 'OperationResult[T]':
        return cls(value=value)

    @classmethod
    def failure(cls, error: FieldLendingError) -> 'OperationResult[T]':
        return cls(error=OperationError.from_exception(error))

    def unwrap(self) -> T:
        """Return the value or raise if the operation failed"""
        if self.error is not None:
            raise RuntimeError(f"{self.error.code}: {self.error.message}")
        return self.value
