from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional

from ..db.base import BaseDBManager
from ..errors import NotFoundError
from ..logging.audit_logger import AuditLogger
from ..models.base import utcnow
from ..models.fraud import (
    FraudCheckResult,
    FraudFlag,
    FraudGateConfig,
    FraudSeverity,
    FraudStatus,
)
from ..models.ledger import LedgerEntryType
from .ledger_store import LedgerStore

logger = logging.getLogger(__name__)


class FraudGate:
    """
    Pre-mint heuristics. Advisory only: a triggered check records a
    FraudFlag and the mint goes ahead regardless. Failing to record a flag
    is logged and swallowed for the same reason.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger_store: LedgerStore,
        audit: AuditLogger,
        config: Optional[FraudGateConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._ledger_store = ledger_store
        self._audit = audit
        self._config = config or FraudGateConfig()
        self._clock = clock

    @property
    def config(self) -> FraudGateConfig:
        return self._config

    async def check_velocity(self, brand_id: str, user_id: str) -> int:
        """Return the number of mints in the trailing window."""
        window_start = self._clock() - timedelta(minutes=self._config.window_minutes)
        return await self._ledger_store.count_since(
            brand_id, user_id, LedgerEntryType.MINT, window_start
        )

    def check_large_amount(self, amount: Decimal) -> bool:
        return amount > self._config.large_amount_threshold

    async def run_checks(
        self, brand_id: str, user_id: str, amount: Decimal
    ) -> FraudCheckResult:
        result = FraudCheckResult()

        try:
            recent_mints = await self.check_velocity(brand_id, user_id)
        except Exception:
            logger.exception(
                "Velocity check failed; mint continues unflagged",
                extra={"brand_id": brand_id, "user_id": user_id},
            )
            recent_mints = 0
        result.velocity_flagged = recent_mints > self._config.max_mints_per_window
        result.large_amount_flagged = self.check_large_amount(amount)

        if result.velocity_flagged:
            await self._raise_flag(
                user_id,
                brand_id,
                FraudSeverity.MEDIUM,
                "High velocity minting detected",
                {
                    "amount": str(amount),
                    "brandId": brand_id,
                    "recentMints": recent_mints,
                    "windowMinutes": self._config.window_minutes,
                },
            )

        if result.large_amount_flagged:
            await self._raise_flag(
                user_id,
                brand_id,
                FraudSeverity.HIGH,
                "Unusually large mint amount detected",
                {
                    "amount": str(amount),
                    "brandId": brand_id,
                    "threshold": str(self._config.large_amount_threshold),
                },
            )

        return result

    async def _raise_flag(
        self,
        user_id: str,
        brand_id: Optional[str],
        severity: FraudSeverity,
        reason: str,
        details: Dict[str, Any],
    ) -> Optional[FraudFlag]:
        flag = FraudFlag(
            user_id=user_id,
            brand_id=brand_id,
            severity=severity,
            reason=reason,
            details=details,
        )
        try:
            flag = await self._db.add_fraud_flag(flag)
            await self._audit.log_transaction(
                message="Fraud flag raised",
                details={"flag_id": flag.id, "severity": severity.value, "reason": reason},
                brand_id=brand_id,
                user_id=user_id,
            )
        except Exception:
            logger.exception(
                "Could not record fraud flag",
                extra={"brand_id": brand_id, "user_id": user_id, "severity": severity.value},
            )
            return None
        logger.warning(
            "Fraud flag %s raised: %s", severity.value, reason,
            extra={"brand_id": brand_id, "user_id": user_id, "flag_id": flag.id},
        )
        return flag

    async def get_flag(self, flag_id: str) -> FraudFlag:
        flag = await self._db.get_fraud_flag(flag_id)
        if flag is None:
            raise NotFoundError("fraud flag", flag_id)
        return flag

    async def list_flags(
        self,
        brand_id: Optional[str] = None,
        status: Optional[FraudStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Iterable[FraudFlag]:
        return await self._db.list_fraud_flags(brand_id, status, limit, offset)

    async def review_flag(
        self, flag_id: str, reviewer_id: str, new_status: FraudStatus
    ) -> FraudFlag:
        """
        Record a human review. Repeating the same review is a no-op; the
        ledger is never touched.
        """
        flag = await self.get_flag(flag_id)
        if flag.status == new_status and flag.reviewed_by == reviewer_id:
            return flag

        flag.status = new_status
        flag.reviewed_by = reviewer_id
        flag.reviewed_at = self._clock()
        flag = await self._db.update_fraud_flag(flag)

        await self._audit.log_transaction(
            message="Fraud flag reviewed",
            details={"flag_id": flag_id, "status": new_status.value, "reviewed_by": reviewer_id},
            brand_id=flag.brand_id,
            user_id=flag.user_id,
        )
        return flag
