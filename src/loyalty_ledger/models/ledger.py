from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, sum_context, utcnow


class LedgerEntryType(str, Enum):
    MINT = "MINT"
    BURN = "BURN"


class LedgerEntry(DBSerializableModel):
    """
    One immutable point movement for a (brand, user) pair.

    Direction lives in `entry_type`; `amount` is always positive.
    """

    collection_name: ClassVar[str] = "reward_ledger"

    id: Optional[str] = Field(default=None)
    brand_id: str
    user_id: str
    entry_type: LedgerEntryType
    amount: Decimal = Field(gt=0)
    reason: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class LedgerTotals(BaseModel):
    minted: Decimal = Decimal("0")
    burned: Decimal = Decimal("0")

    @property
    def net(self) -> Decimal:
        with sum_context():
            return self.minted - self.burned


class LedgerPage(BaseModel):
    items: List[LedgerEntry] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[datetime] = None


class MintResult(BaseModel):
    ledger_entry_id: str
    new_balance: Decimal
