from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from ..db.base import BaseDBManager
from ..errors import ValidationError
from ..models.base import DEFAULT_AMOUNT_BOUNDS, AmountBounds, to_amount
from ..models.ledger import LedgerEntry, LedgerEntryType, LedgerPage


class LedgerStore:
    """
    Write-once, read-many view over the reward ledger.

    No update or delete: corrections are new,
    offsetting entries.
    """

    def __init__(
        self,
        db: BaseDBManager,
        page_max: int = 200,
        amount_bounds: AmountBounds = DEFAULT_AMOUNT_BOUNDS,
    ) -> None:
        self._db = db
        self._page_max = page_max
        self._amount_bounds = amount_bounds

    def parse_amount(self, value: Any, field: str = "amount") -> Decimal:
        return to_amount(value, field, self._amount_bounds)

    async def append(
        self,
        brand_id: str,
        user_id: str,
        entry_type: LedgerEntryType,
        amount: Decimal,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        amount = self.parse_amount(amount)
        entry = LedgerEntry(
            brand_id=brand_id,
            user_id=user_id,
            entry_type=entry_type,
            amount=amount,
            reason=reason,
            metadata=dict(metadata or {}),
        )
        return await self._db.append_ledger_entry(entry)

    async def count_since(
        self,
        brand_id: str,
        user_id: str,
        entry_type: LedgerEntryType,
        since: datetime,
    ) -> int:
        return await self._db.count_ledger_entries_since(brand_id, user_id, entry_type, since)

    async def history(
        self,
        brand_id: str,
        user_id: str,
        cursor: Optional[datetime] = None,
        limit: int = 50,
        entry_type: Optional[LedgerEntryType] = None,
        reason: Optional[str] = None,
    ) -> LedgerPage:
        """
        Page through a pair's entries newest first. `cursor` is the
        `created_at` of the last item of the previous page.
        """
        if limit <= 0:
            raise ValidationError("limit must be positive")
        limit = min(limit, self._page_max)

        # One extra row tells us whether another page exists.
        rows = list(
            await self._db.list_ledger_entries(
                brand_id,
                user_id,
                before=cursor,
                limit=limit + 1,
                entry_type=entry_type,
                reason=reason,
            )
        )
        has_more = len(rows) > limit
        items = rows[:limit]
        return LedgerPage(
            items=items,
            has_more=has_more,
            next_cursor=items[-1].created_at if has_more else None,
        )
