"""
Structured operation results.

Every public operation of the workflow engine answers with an
``OperationResult`` rather than raising: ``{success, data}`` on success,
``{success, error_code, message}`` on failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a single engine operation."""

    success: bool
    data: Any = None
    error_code: str | None = None
    message: str = ""
    http_status: int = 200
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, message: str = "") -> OperationResult:
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(
        cls,
        error_code: str,
        message: str,
        http_status: int = 400,
        details: dict[str, Any] | None = None,
    ) -> OperationResult:
        return cls(
            success=False,
            error_code=error_code,
            message=message,
            http_status=http_status,
            details=details or {},
        )

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data, "message": self.message}
        return {
            "success": False,
            "error_code": self.error_code,
            "message": self.message,
        }
