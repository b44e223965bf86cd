from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .fraud import FraudStatus


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class IssuePointsRequest(_CamelModel):
    user_id: str = Field(alias="userId", min_length=1)
    amount: Decimal = Field(gt=0)
    reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class BurnPointsRequest(IssuePointsRequest):
    pass


class IntegrationIssueRequest(_CamelModel):
    external_user_id: str = Field(alias="externalUserId", min_length=1)
    points: Decimal = Field(gt=0)
    reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class CreateRedemptionRequest(_CamelModel):
    user_id: str = Field(alias="userId", min_length=1)
    points_used: Decimal = Field(alias="pointsUsed", gt=0)
    campaign_id: Optional[str] = Field(default=None, alias="campaignId")
    metadata: Optional[Dict[str, Any]] = None


class IntegrationRedeemRequest(_CamelModel):
    external_user_id: str = Field(alias="externalUserId", min_length=1)
    points: Decimal = Field(gt=0)
    campaign_id: Optional[str] = Field(default=None, alias="campaignId")
    metadata: Optional[Dict[str, Any]] = None


class ReviewFraudFlagRequest(BaseModel):
    status: FraudStatus


class CreateApiKeyRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)


class MintResponse(BaseModel):
    ledgerEntryId: str
    newBalance: Decimal


class BurnResponse(BaseModel):
    ledgerEntryId: str


class BalanceResponse(BaseModel):
    brandId: str
    userId: Optional[str] = None
    externalUserId: Optional[str] = None
    balance: Decimal


class RedemptionResponse(BaseModel):
    redemptionId: str
    status: str


class LedgerHistoryResponse(BaseModel):
    items: List[Dict[str, Any]]
    hasMore: bool
    nextCursor: Optional[datetime] = None


class ApiKeyCreatedResponse(BaseModel):
    id: str
    brandId: str
    name: str
    apiKey: str = Field(description="Raw key; shown exactly once.")
