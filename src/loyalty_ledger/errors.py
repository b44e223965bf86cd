from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class LoyaltyError(Exception):
    """Base class for every error raised by the ledger core."""

    code: str = "loyalty_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class ValidationError(LoyaltyError, ValueError):
    code = "validation_error"


class InsufficientBalanceError(LoyaltyError):
    code = "insufficient_balance"

    def __init__(self, required: Decimal, available: Decimal) -> None:
        super().__init__(
            f"insufficient balance: required {required}, available {available}"
        )
        self.required = required
        self.available = available

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["required"] = str(self.required)
        data["available"] = str(self.available)
        return data


class InvalidStateError(LoyaltyError):
    code = "invalid_state"

    def __init__(self, current: str, attempted: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"cannot move from '{current}' to '{attempted}'")
        self.current = current
        self.attempted = attempted

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["current"] = self.current
        data["attempted"] = self.attempted
        return data


class NotFoundError(LoyaltyError):
    code = "not_found"

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["resource"] = self.resource
        data["id"] = self.resource_id
        return data


class InfrastructureError(LoyaltyError):
    """The backing store is unavailable. Safe for the caller to retry."""

    code = "infrastructure_error"


class AuthenticationError(LoyaltyError):
    code = "unauthenticated"


class BrandAccessError(LoyaltyError):
    code = "brand_access_denied"


class LedgerInvariantError(LoyaltyError):
    """Raised when a derived balance contradicts the non-negative invariant."""

    code = "ledger_invariant_violated"
