from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Context, Decimal, InvalidOperation, localcontext
from typing import Any, ClassVar, ContextManager, Dict, Mapping, Optional, Tuple, cast

from pydantic import BaseModel, Field

from ..errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model for everything the DB managers persist.

    Subclasses name their logical collection / table through
    `collection_name`; the managers never need to know more than that and
    the dict produced by `serialize_for_db()`.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        This is the single place to control how models are stored;
        DB adapters can still post-process this (e.g. Decimal128).
        """
        return self.model_dump(by_alias=True, exclude_none=True)


# Decimal128 holds 34 significant digits; totals are summed at that width.
SUM_PRECISION = 34


class AmountBounds(BaseModel):
    """
    Largest point quantity a single ledger entry may carry. Kept well under
    `SUM_PRECISION` so pair totals stay exact.
    """

    max_digits: int = Field(default=20, ge=1, le=30)
    max_scale: int = Field(default=8, ge=0)


DEFAULT_AMOUNT_BOUNDS = AmountBounds()


def sum_context() -> ContextManager[Context]:
    """Decimal context wide enough to add bounded amounts without rounding."""
    ctx = Context(prec=SUM_PRECISION)
    return localcontext(ctx)


def _digits_and_scale(amount: Decimal) -> Tuple[int, int]:
    _, digits, raw_exponent = amount.as_tuple()
    exponent = cast(int, raw_exponent)
    significant = list(digits)
    # Trailing fractional zeros do not count against the scale.
    while exponent < 0 and len(significant) > 1 and significant[-1] == 0:
        significant.pop()
        exponent += 1
    scale = max(-exponent, 0)
    integer_digits = max(len(significant) + exponent, 0)
    return integer_digits, scale


def to_amount(
    value: Any,
    field: str = "amount",
    bounds: AmountBounds = DEFAULT_AMOUNT_BOUNDS,
) -> Decimal:
    """
    Coerce a caller supplied quantity into a positive, finite Decimal.

    Floats are routed through `str()` so that 0.1 stays 0.1 instead of
    its binary expansion. Values with more than `bounds.max_scale`
    decimal places or `bounds.max_digits` digits overall are rejected
    rather than rounded.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be a number") from exc
    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite")
    if amount <= 0:
        raise ValidationError(f"{field} must be positive")

    integer_digits, scale = _digits_and_scale(amount)
    if scale > bounds.max_scale:
        raise ValidationError(
            f"{field} allows at most {bounds.max_scale} decimal places"
        )
    if integer_digits + scale > bounds.max_digits:
        raise ValidationError(
            f"{field} allows at most {bounds.max_digits} digits"
        )
    return amount


def check_metadata(
    metadata: Optional[Mapping[str, Any]], max_bytes: int
) -> Dict[str, Any]:
    """Metadata is an opaque bag; only its type and encoded size are enforced."""
    if metadata is None:
        return {}
    if not isinstance(metadata, Mapping):
        raise ValidationError("metadata must be a key-value mapping")
    data = dict(metadata)
    try:
        encoded = json.dumps(data, default=str).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise ValidationError("metadata must be JSON serializable") from exc
    if len(encoded) > max_bytes:
        raise ValidationError(
            f"metadata is {len(encoded)} bytes, limit is {max_bytes}"
        )
    return data
