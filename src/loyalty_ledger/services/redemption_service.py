from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Tuple

from ..db.base import BaseDBManager
from ..errors import InsufficientBalanceError, InvalidStateError, NotFoundError
from ..logging.audit_logger import AuditLogger
from ..models.base import utcnow
from ..models.ledger import LedgerEntryType
from ..models.redemption import Redemption, RedemptionStatus
from .balance import ZERO, BalanceCalculator
from .ledger_store import LedgerStore
from .rewards_engine import RewardsEngine


class RedemptionService:
    """
    Redemption state machine: pending -> completed, or pending -> cancelled
    with a refund.

    Creation is a single atomic unit (sufficiency check, pending record,
    burn, completion) held under the pair's balance lock and one store
    transaction. Dashboard and integration callers share this path.
    """

    def __init__(
        self,
        db: BaseDBManager,
        engine: RewardsEngine,
        ledger_store: LedgerStore,
        balance: BalanceCalculator,
        audit: AuditLogger,
    ) -> None:
        self._db = db
        self._engine = engine
        self._ledger_store = ledger_store
        self._balance = balance
        self._audit = audit

    async def create_redemption(
        self,
        brand_id: str,
        user_id: str,
        points_used: Any,
        campaign_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> Redemption:
        points = self._ledger_store.parse_amount(points_used, field="points_used")
        metadata = self._engine.check_metadata(metadata)

        async with self._db.balance_lock(brand_id, user_id):
            available = await self._balance.get_true_balance(brand_id, user_id)
            if available < points:
                await self._audit.log_error(
                    message="Insufficient balance for redemption",
                    details={"required": str(points), "available": str(available)},
                    brand_id=brand_id,
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise InsufficientBalanceError(required=points, available=max(available, ZERO))

            async with self._db.transaction():
                redemption = await self._db.add_redemption(
                    Redemption(
                        brand_id=brand_id,
                        user_id=user_id,
                        campaign_id=campaign_id,
                        points_used=points,
                        status=RedemptionStatus.PENDING,
                        metadata=metadata,
                    )
                )

                burn_metadata: Dict[str, Any] = {"redemptionId": redemption.id}
                if campaign_id is not None:
                    burn_metadata["campaignId"] = campaign_id
                await self._engine.burn_points(
                    brand_id,
                    user_id,
                    points,
                    reason="redemption",
                    metadata=burn_metadata,
                    correlation_id=correlation_id,
                )

                redemption.status = RedemptionStatus.COMPLETED
                redemption.updated_at = utcnow()
                redemption = await self._db.update_redemption(redemption)

        await self._audit.log_transaction(
            message="Redemption completed",
            details={"redemption_id": redemption.id, "points_used": str(points)},
            brand_id=brand_id,
            user_id=user_id,
            correlation_id=correlation_id,
        )
        return redemption

    async def cancel_redemption(
        self, redemption_id: str, correlation_id: Optional[str] = None
    ) -> Redemption:
        redemption = await self.get_redemption(redemption_id)

        async with self._db.balance_lock(redemption.brand_id, redemption.user_id):
            # Re-read under the lock so two cancels cannot both refund.
            redemption = await self.get_redemption(redemption_id)
            if not redemption.can_cancel():
                raise InvalidStateError(
                    current=redemption.status.value,
                    attempted=RedemptionStatus.CANCELLED.value,
                    message=f"can only cancel pending redemptions; {redemption_id} is {redemption.status.value}",
                )

            async with self._db.transaction():
                refund = await self._ledger_store.append(
                    redemption.brand_id,
                    redemption.user_id,
                    LedgerEntryType.MINT,
                    redemption.points_used,
                    "redemption_refund",
                    {"originalRedemptionId": redemption.id},
                )
                redemption.status = RedemptionStatus.CANCELLED
                redemption.updated_at = utcnow()
                redemption = await self._db.update_redemption(redemption)

        await self._audit.log_transaction(
            message="Redemption cancelled",
            details={
                "redemption_id": redemption.id,
                "refund_entry_id": refund.id,
                "points_refunded": str(redemption.points_used),
            },
            brand_id=redemption.brand_id,
            user_id=redemption.user_id,
            correlation_id=correlation_id,
        )
        return redemption

    async def get_redemption(self, redemption_id: str) -> Redemption:
        redemption = await self._db.get_redemption(redemption_id)
        if redemption is None:
            raise NotFoundError("redemption", redemption_id)
        return redemption

    async def list_redemptions(
        self,
        brand_id: str,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[Iterable[Redemption], int]:
        return await self._db.list_redemptions(brand_id, user_id, limit, offset)
