"""
Operation result wrapper returned by every orchestrator and service operation.
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from medenroll.core.errors import EnrollmentError

T = TypeVar("T")


@dataclass
class OperationResult(Generic[T]):
    """Outcome of an operation: a value, or a typed domain error.

    ``conflict`` marks a benign race: the caller's intended outcome had
    already been reached by a concurrent caller, so the result is still a
    success.
    """

    value: Optional[T] = None
    error: Optional[EnrollmentError] = None
    conflict: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None, conflict: bool = False) -> "OperationResult[T]":
        return cls(value=value, conflict=conflict)

    @classmethod
    def failure(cls, error: EnrollmentError) -> "OperationResult[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
