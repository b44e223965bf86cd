from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Redemption(DBSerializableModel):
    collection_name: ClassVar[str] = "redemptions"

    id: Optional[str] = Field(default=None)
    brand_id: str
    user_id: str
    campaign_id: Optional[str] = None
    points_used: Decimal = Field(gt=0)
    status: RedemptionStatus = RedemptionStatus.PENDING
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def can_cancel(self) -> bool:
        return self.status == RedemptionStatus.PENDING
