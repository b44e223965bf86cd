from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from ..db.base import BaseDBManager
from ..errors import InsufficientBalanceError
from ..logging.audit_logger import AuditLogger
from ..models.base import check_metadata
from ..models.ledger import LedgerEntry, LedgerEntryType, MintResult
from .balance import ZERO, BalanceCalculator
from .fraud_gate import FraudGate
from .ledger_store import LedgerStore


class RewardsEngine:
    """
    Transactional façade for minting and burning points.

    Every write to a (brand, user) balance happens under that pair's
    balance lock, and `burn_points` re-validates sufficiency inside it, so
    concurrent burns can never drive the true balance below zero.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger_store: LedgerStore,
        balance: BalanceCalculator,
        fraud_gate: FraudGate,
        audit: AuditLogger,
        max_metadata_bytes: int = 8192,
    ) -> None:
        self._db = db
        self._ledger_store = ledger_store
        self._balance = balance
        self._fraud_gate = fraud_gate
        self._audit = audit
        self._max_metadata_bytes = max_metadata_bytes

    def check_metadata(self, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return check_metadata(metadata, self._max_metadata_bytes)

    def parse_amount(self, value: Any, field: str = "amount") -> Decimal:
        return self._ledger_store.parse_amount(value, field)

    async def mint_points(
        self,
        brand_id: str,
        user_id: str,
        amount: Any,
        reason: str = "manual_issue",
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        amount = self.parse_amount(amount)
        metadata = self.check_metadata(metadata)

        checks = await self._fraud_gate.run_checks(brand_id, user_id, amount)

        async with self._db.balance_lock(brand_id, user_id):
            entry = await self._ledger_store.append(
                brand_id, user_id, LedgerEntryType.MINT, amount, reason, metadata
            )

        await self._audit.log_transaction(
            message="Points minted",
            details={
                "entry_id": entry.id,
                "amount": str(amount),
                "reason": reason,
                "fraud_flagged": checks.flagged,
            },
            brand_id=brand_id,
            user_id=user_id,
            correlation_id=correlation_id,
        )
        return entry

    async def issue_points(
        self,
        brand_id: str,
        user_id: str,
        amount: Any,
        reason: str = "manual_issue",
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> MintResult:
        """Mint and report the balance as it stands right after the mint."""
        async with self._db.balance_lock(brand_id, user_id):
            entry = await self.mint_points(
                brand_id, user_id, amount, reason, metadata, correlation_id
            )
            new_balance = await self._balance.get_balance(brand_id, user_id)
        return MintResult(ledger_entry_id=entry.id or "", new_balance=new_balance)

    async def burn_points(
        self,
        brand_id: str,
        user_id: str,
        amount: Any,
        reason: str = "manual_burn",
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        amount = self.parse_amount(amount)
        metadata = self.check_metadata(metadata)

        async with self._db.balance_lock(brand_id, user_id):
            available = await self._balance.get_true_balance(brand_id, user_id)
            if available < amount:
                await self._audit.log_error(
                    message="Insufficient balance for burn",
                    details={"requested": str(amount), "available": str(available), "reason": reason},
                    brand_id=brand_id,
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise InsufficientBalanceError(required=amount, available=max(available, ZERO))

            entry = await self._ledger_store.append(
                brand_id, user_id, LedgerEntryType.BURN, amount, reason, metadata
            )

        await self._audit.log_transaction(
            message="Points burned",
            details={"entry_id": entry.id, "amount": str(amount), "reason": reason},
            brand_id=brand_id,
            user_id=user_id,
            correlation_id=correlation_id,
        )
        return entry

    async def get_user_balance(self, brand_id: str, user_id: str) -> Decimal:
        return await self._balance.get_balance(brand_id, user_id)

    async def has_sufficient_balance(self, brand_id: str, user_id: str, amount: Any) -> bool:
        return await self._balance.has_sufficient_balance(
            brand_id, user_id, self.parse_amount(amount)
        )
