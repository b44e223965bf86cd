from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class Brand(DBSerializableModel):
    collection_name: ClassVar[str] = "brands"

    id: Optional[str] = Field(default=None)
    name: str
    is_active: bool = True
    is_suspended: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    def accepts_integrations(self) -> bool:
        return self.is_active and not self.is_suspended


class BrandApiKey(DBSerializableModel):
    """
    Credential mapping a bearer token to a brand. Only the SHA-256 hash of
    the raw key is stored.
    """

    collection_name: ClassVar[str] = "brand_api_keys"

    id: Optional[str] = Field(default=None)
    brand_id: str
    name: str
    key_hash: str
    is_active: bool = True
    last_used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class IntegrationContext(BaseModel):
    brand_id: str
    api_key_id: str
