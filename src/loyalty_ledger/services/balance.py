from __future__ import annotations

import logging
from decimal import Decimal

from ..db.base import BaseDBManager
from ..errors import LedgerInvariantError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class BalanceCalculator:
    """
    Derives balances from the ledger on every call; nothing is cached.

    `get_true_balance` is the raw Σ MINT − Σ BURN. The exposed
    `get_balance` floors it at zero, but a negative true balance is never
    silent: it is logged as an error, or raised when `strict` is set.
    """

    def __init__(self, db: BaseDBManager, strict: bool = False) -> None:
        self._db = db
        self._strict = strict

    async def get_true_balance(self, brand_id: str, user_id: str) -> Decimal:
        totals = await self._db.get_ledger_totals(brand_id, user_id)
        return totals.net

    async def get_balance(self, brand_id: str, user_id: str) -> Decimal:
        balance = await self.get_true_balance(brand_id, user_id)
        if balance < ZERO:
            if self._strict:
                raise LedgerInvariantError(
                    f"negative balance {balance} for brand {brand_id} user {user_id}"
                )
            logger.error(
                "Ledger invariant violated: negative balance",
                extra={"brand_id": brand_id, "user_id": user_id, "balance": str(balance)},
            )
            return ZERO
        return balance

    async def has_sufficient_balance(
        self, brand_id: str, user_id: str, amount: Decimal
    ) -> bool:
        return await self.get_balance(brand_id, user_id) >= amount
