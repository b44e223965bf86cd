from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class FraudSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class FraudStatus(str, Enum):
    PENDING = "PENDING"
    REVIEWED = "REVIEWED"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


class FraudFlag(DBSerializableModel):
    """
    Advisory record raised by the fraud gate. Never part of the balance.
    """

    collection_name: ClassVar[str] = "fraud_flags"

    id: Optional[str] = Field(default=None)
    user_id: str
    brand_id: Optional[str] = Field(
        default=None, description="None for platform-wide flags."
    )
    severity: FraudSeverity
    reason: str
    details: Dict[str, Any] = Field(default_factory=dict)
    status: FraudStatus = FraudStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class FraudGateConfig(BaseModel):
    window_minutes: int = Field(default=60, gt=0)
    max_mints_per_window: int = Field(default=10, ge=0)
    large_amount_threshold: Decimal = Field(default=Decimal("10000"), gt=0)


class FraudCheckResult(BaseModel):
    velocity_flagged: bool = False
    large_amount_flagged: bool = False

    @property
    def flagged(self) -> bool:
        return self.velocity_flagged or self.large_amount_flagged
