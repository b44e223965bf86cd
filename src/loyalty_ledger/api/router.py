from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from ..container import LoyaltyServices
from ..errors import AuthenticationError
from ..models.api_models import (
    ApiKeyCreatedResponse,
    BalanceResponse,
    BurnPointsRequest,
    BurnResponse,
    CreateApiKeyRequest,
    CreateRedemptionRequest,
    IntegrationIssueRequest,
    IntegrationRedeemRequest,
    IssuePointsRequest,
    LedgerHistoryResponse,
    MintResponse,
    RedemptionResponse,
    ReviewFraudFlagRequest,
)
from ..models.brand import IntegrationContext
from ..models.fraud import FraudStatus
from ..models.ledger import LedgerEntryType
from ..services.identity import Identity


def get_services(request: Request) -> LoyaltyServices:
    return request.app.state.services


async def current_identity(
    request: Request, services: LoyaltyServices = Depends(get_services)
) -> Identity:
    credential = request.headers.get(services.settings.identity_header)
    return await services.identity_provider.resolve_caller_identity(credential)


def integration_context(request: Request) -> IntegrationContext:
    ctx = getattr(request.state, "integration", None)
    if ctx is None:
        raise AuthenticationError("Not authenticated")
    return ctx


dashboard_router = APIRouter(
    prefix="/v1", tags=["dashboard"], dependencies=[Depends(current_identity)]
)
integration_router = APIRouter(prefix="/v1/integration", tags=["integration"])


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(mode="json")


# Dashboard: points
@dashboard_router.post(
    "/brands/{brand_id}/points/issue",
    response_model=MintResponse,
    status_code=status.HTTP_201_CREATED,
)
async def issue_points(
    brand_id: str,
    payload: IssuePointsRequest,
    services: LoyaltyServices = Depends(get_services),
) -> MintResponse:
    result = await services.engine.issue_points(
        brand_id,
        payload.user_id,
        payload.amount,
        reason=payload.reason or "manual_issue",
        metadata=payload.metadata,
    )
    return MintResponse(ledgerEntryId=result.ledger_entry_id, newBalance=result.new_balance)


@dashboard_router.post(
    "/brands/{brand_id}/points/burn",
    response_model=BurnResponse,
    status_code=status.HTTP_201_CREATED,
)
async def burn_points(
    brand_id: str,
    payload: BurnPointsRequest,
    services: LoyaltyServices = Depends(get_services),
) -> BurnResponse:
    entry = await services.engine.burn_points(
        brand_id,
        payload.user_id,
        payload.amount,
        reason=payload.reason or "manual_burn",
        metadata=payload.metadata,
    )
    return BurnResponse(ledgerEntryId=entry.id or "")


@dashboard_router.get("/brands/{brand_id}/users/{user_id}/balance", response_model=BalanceResponse)
async def get_balance(
    brand_id: str, user_id: str, services: LoyaltyServices = Depends(get_services)
) -> BalanceResponse:
    balance = await services.engine.get_user_balance(brand_id, user_id)
    return BalanceResponse(brandId=brand_id, userId=user_id, balance=balance)


@dashboard_router.get(
    "/brands/{brand_id}/users/{user_id}/ledger", response_model=LedgerHistoryResponse
)
async def ledger_history(
    brand_id: str,
    user_id: str,
    cursor: Optional[datetime] = None,
    limit: int = Query(default=50, gt=0),
    entry_type: Optional[LedgerEntryType] = Query(default=None, alias="type"),
    reason: Optional[str] = None,
    services: LoyaltyServices = Depends(get_services),
) -> LedgerHistoryResponse:
    page = await services.ledger_store.history(
        brand_id, user_id, cursor=cursor, limit=limit, entry_type=entry_type, reason=reason
    )
    return LedgerHistoryResponse(
        items=[_dump(e) for e in page.items],
        hasMore=page.has_more,
        nextCursor=page.next_cursor,
    )


# Dashboard: redemptions
@dashboard_router.post(
    "/brands/{brand_id}/redemptions",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_redemption(
    brand_id: str,
    payload: CreateRedemptionRequest,
    services: LoyaltyServices = Depends(get_services),
) -> RedemptionResponse:
    redemption = await services.redemptions.create_redemption(
        brand_id,
        payload.user_id,
        payload.points_used,
        campaign_id=payload.campaign_id,
        metadata=payload.metadata,
    )
    return RedemptionResponse(redemptionId=redemption.id or "", status=redemption.status.value)


@dashboard_router.get("/brands/{brand_id}/redemptions")
async def list_redemptions(
    brand_id: str,
    user_id: Optional[str] = Query(default=None, alias="userId"),
    limit: int = Query(default=50, gt=0, le=200),
    offset: int = Query(default=0, ge=0),
    services: LoyaltyServices = Depends(get_services),
) -> Dict[str, Any]:
    items, total = await services.redemptions.list_redemptions(brand_id, user_id, limit, offset)
    items = list(items)
    return {
        "items": [_dump(r) for r in items],
        "total": total,
        "hasMore": offset + len(items) < total,
    }


@dashboard_router.get("/redemptions/{redemption_id}")
async def get_redemption(
    redemption_id: str, services: LoyaltyServices = Depends(get_services)
) -> Dict[str, Any]:
    return _dump(await services.redemptions.get_redemption(redemption_id))


@dashboard_router.post("/redemptions/{redemption_id}/cancel", response_model=RedemptionResponse)
async def cancel_redemption(
    redemption_id: str, services: LoyaltyServices = Depends(get_services)
) -> RedemptionResponse:
    redemption = await services.redemptions.cancel_redemption(redemption_id)
    return RedemptionResponse(redemptionId=redemption.id or "", status=redemption.status.value)


# Dashboard: fraud review
@dashboard_router.get("/fraud/flags")
async def list_fraud_flags(
    brand_id: Optional[str] = Query(default=None, alias="brandId"),
    flag_status: Optional[FraudStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, gt=0, le=200),
    offset: int = Query(default=0, ge=0),
    services: LoyaltyServices = Depends(get_services),
) -> Dict[str, Any]:
    flags = await services.fraud_gate.list_flags(brand_id, flag_status, limit, offset)
    return {"items": [_dump(f) for f in flags]}


@dashboard_router.get("/fraud/flags/{flag_id}")
async def get_fraud_flag(
    flag_id: str, services: LoyaltyServices = Depends(get_services)
) -> Dict[str, Any]:
    return _dump(await services.fraud_gate.get_flag(flag_id))


@dashboard_router.post("/fraud/flags/{flag_id}/review")
async def review_fraud_flag(
    flag_id: str,
    payload: ReviewFraudFlagRequest,
    identity: Identity = Depends(current_identity),
    services: LoyaltyServices = Depends(get_services),
) -> Dict[str, Any]:
    flag = await services.fraud_gate.review_flag(flag_id, identity.user_id, payload.status)
    return _dump(flag)


# Dashboard: API keys
@dashboard_router.post(
    "/brands/{brand_id}/api-keys",
    response_model=ApiKeyCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_api_key(
    brand_id: str,
    payload: CreateApiKeyRequest,
    services: LoyaltyServices = Depends(get_services),
) -> ApiKeyCreatedResponse:
    api_key, raw_key = await services.api_keys.create_api_key(brand_id, payload.name)
    return ApiKeyCreatedResponse(
        id=api_key.id or "", brandId=brand_id, name=api_key.name, apiKey=raw_key
    )


@dashboard_router.get("/brands/{brand_id}/api-keys")
async def list_api_keys(
    brand_id: str, services: LoyaltyServices = Depends(get_services)
) -> Dict[str, Any]:
    keys = await services.api_keys.list_api_keys(brand_id)
    return {"items": [k.model_dump(mode="json", exclude={"key_hash"}) for k in keys]}


@dashboard_router.delete("/brands/{brand_id}/api-keys/{api_key_id}")
async def disable_api_key(
    brand_id: str, api_key_id: str, services: LoyaltyServices = Depends(get_services)
) -> Dict[str, Any]:
    api_key = await services.api_keys.disable_api_key(brand_id, api_key_id)
    return {"id": api_key.id, "isActive": api_key.is_active}


# Integration (API key)
@integration_router.get("/whoami")
async def whoami(ctx: IntegrationContext = Depends(integration_context)) -> Dict[str, Any]:
    return {"brandId": ctx.brand_id, "apiKeyId": ctx.api_key_id, "status": "ok"}


@integration_router.post("/points/issue", status_code=status.HTTP_201_CREATED)
async def integration_issue_points(
    payload: IntegrationIssueRequest,
    ctx: IntegrationContext = Depends(integration_context),
    services: LoyaltyServices = Depends(get_services),
) -> Dict[str, Any]:
    user, result = await services.integration.issue_points(
        ctx, payload.external_user_id, payload.points, payload.reason, payload.metadata
    )
    return {
        "status": "ok",
        "brandId": ctx.brand_id,
        "userId": user.id,
        "externalUserId": payload.external_user_id,
        "pointsIssued": str(payload.points),
        "newBalance": str(result.new_balance),
        "ledgerEntryId": result.ledger_entry_id,
    }


@integration_router.get("/points/balance")
async def integration_balance(
    external_user_id: str = Query(alias="externalUserId", min_length=1),
    ctx: IntegrationContext = Depends(integration_context),
    services: LoyaltyServices = Depends(get_services),
) -> Dict[str, Any]:
    user, balance = await services.integration.get_balance(ctx, external_user_id)
    return {
        "status": "ok",
        "brandId": ctx.brand_id,
        "userId": user.id if user else None,
        "externalUserId": external_user_id,
        "balance": str(balance),
    }


@integration_router.post("/redemptions", status_code=status.HTTP_201_CREATED)
async def integration_redeem(
    payload: IntegrationRedeemRequest,
    ctx: IntegrationContext = Depends(integration_context),
    services: LoyaltyServices = Depends(get_services),
) -> Dict[str, Any]:
    redemption = await services.integration.redeem_points(
        ctx, payload.external_user_id, payload.points, payload.campaign_id, payload.metadata
    )
    return {"redemptionId": redemption.id, "status": redemption.status.value}
