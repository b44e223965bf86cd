from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


def integration_identity_key(brand_id: str, external_user_id: str) -> str:
    return f"integration_{brand_id}_{external_user_id}"


class UserAccount(DBSerializableModel):
    """
    Internal user representation for the ledger.

    Integration users are brand-scoped pseudonyms; `identity_key` is unique
    across the store so concurrent first-touch resolves to one account.
    """

    collection_name: ClassVar[str] = "loyalty_users"

    id: Optional[str] = Field(default=None)
    identity_key: Optional[str] = Field(
        default=None,
        description="Unique derived key, e.g. integration_{brandId}_{externalUserId}.",
    )
    brand_id: Optional[str] = None
    external_user_id: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
