from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when the account store refuses a write."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class UniqueViolation(ConstraintViolation):
    """Another account in the same role collection already owns the value."""

    def __init__(self, role: str, field: str, value: str):
        super().__init__(f"{field} already exists", {"role": role, "field": field})
        self.role = role
        self.field = field
        self.value = value


__all__ = ["ConstraintViolation", "UniqueViolation"]
