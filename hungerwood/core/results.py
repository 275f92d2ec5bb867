"""
Structured Operation Results

Caller-facing operations return an OperationResult instead of raising for
expected business-rule violations (invalid transition, insufficient
balance...). Anything that is not an OrderCoreError, such as a lost
database connection, still propagates to the caller.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Generic, Optional, TypeVar

from hungerwood.core.exceptions import OrderCoreError

T = TypeVar("T")


@dataclass
class OperationResult(Generic[T]):
    """
    Standardized result of a caller-facing core operation.

    Attributes:
        success: Whether the operation was applied
        data: Operation payload on success
        error_code: Machine-readable error code on failure
        error_message: Human-readable failure description
        details: Extra failure context (allowed statuses, balance...)
        http_status: Suggested HTTP status for the API layer
    """
    success: bool
    data: Optional[T] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    details: dict = field(default_factory=dict)
    http_status: int = 200

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "OperationResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: OrderCoreError) -> "OperationResult[T]":
        payload = error.to_dict()
        return cls(
            success=False,
            error_code=payload["code"],
            error_message=payload["message"],
            details=payload["details"],
            http_status=error.http_status,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        if self.success:
            data = self.data
            if hasattr(data, "model_dump"):
                data = data.model_dump(mode="json", by_alias=True)
            return {"success": True, "data": data}
        return {
            "success": False,
            "error": self.error_code,
            "message": self.error_message,
            "details": self.details,
        }


async def capture(awaitable: Awaitable[T]) -> OperationResult[T]:
    """Await an operation and fold business-rule errors into a result."""
    try:
        return OperationResult.ok(await awaitable)
    except OrderCoreError as exc:
        return OperationResult.fail(exc)
