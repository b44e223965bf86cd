from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from ..errors import InsufficientBalanceError
from ..models.brand import IntegrationContext
from ..models.ledger import MintResult
from ..models.redemption import Redemption
from ..models.user import UserAccount
from .balance import ZERO
from .identity import ExternalUserResolver
from .redemption_service import RedemptionService
from .rewards_engine import RewardsEngine


class IntegrationService:
    """
    Operations for partner systems authenticated by a brand API key. They
    address users by `externalUserId` and never see internal ids as input.
    """

    def __init__(
        self,
        engine: RewardsEngine,
        redemptions: RedemptionService,
        resolver: ExternalUserResolver,
    ) -> None:
        self._engine = engine
        self._redemptions = redemptions
        self._resolver = resolver

    @staticmethod
    def _system_metadata(
        ctx: IntegrationContext, external_user_id: str, metadata: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        # System keys override partner-supplied ones.
        merged = dict(metadata or {})
        merged.update(
            {
                "externalUserId": external_user_id,
                "source": "api_integration",
                "apiKeyId": ctx.api_key_id,
            }
        )
        return merged

    async def issue_points(
        self,
        ctx: IntegrationContext,
        external_user_id: str,
        points: Any,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[UserAccount, MintResult]:
        points = self._engine.parse_amount(points, field="points")
        user = await self._resolver.find_or_create(ctx.brand_id, external_user_id)
        result = await self._engine.issue_points(
            ctx.brand_id,
            user.id or "",
            points,
            reason=reason or "integration_issue",
            metadata=self._system_metadata(ctx, external_user_id, metadata),
        )
        return user, result

    async def get_balance(
        self, ctx: IntegrationContext, external_user_id: str
    ) -> Tuple[Optional[UserAccount], Decimal]:
        """Unknown users have a zero balance; looking them up creates nothing."""
        user = await self._resolver.find(ctx.brand_id, external_user_id)
        if user is None or user.id is None:
            return None, ZERO
        return user, await self._engine.get_user_balance(ctx.brand_id, user.id)

    async def redeem_points(
        self,
        ctx: IntegrationContext,
        external_user_id: str,
        points: Any,
        campaign_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Redemption:
        points = self._engine.parse_amount(points, field="points")
        user = await self._resolver.find(ctx.brand_id, external_user_id)
        if user is None or user.id is None:
            raise InsufficientBalanceError(required=points, available=ZERO)
        return await self._redemptions.create_redemption(
            ctx.brand_id,
            user.id,
            points,
            campaign_id=campaign_id,
            metadata=self._system_metadata(ctx, external_user_id, metadata),
        )
