from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel

from ..db.base import BaseDBManager
from ..errors import AuthenticationError, ValidationError
from ..models.user import UserAccount, integration_identity_key


class Identity(BaseModel):
    user_id: str
    email: Optional[str] = None
    is_platform_admin: bool = False


class IdentityProvider(ABC):
    """
    Strategy that answers "who is calling?" for dashboard operations.
    Chosen once at process start and passed in explicitly.
    """

    @abstractmethod
    async def resolve_caller_identity(self, credential: Optional[str] = None) -> Identity: ...


class StaticIdentityProvider(IdentityProvider):
    """Always the same caller. Development only."""

    def __init__(self, identity: Identity) -> None:
        self._identity = identity

    async def resolve_caller_identity(self, credential: Optional[str] = None) -> Identity:
        return self._identity


class TrustedHeaderIdentityProvider(IdentityProvider):
    """
    Identity asserted by an upstream gateway that already authenticated
    the session; `credential` is the internal user id it forwarded.
    """

    def __init__(self, db: BaseDBManager) -> None:
        self._db = db

    async def resolve_caller_identity(self, credential: Optional[str] = None) -> Identity:
        if not credential:
            raise AuthenticationError("missing caller identity")
        user = await self._db.get_user(credential)
        if user is None or user.id is None:
            raise AuthenticationError("unknown caller identity")
        return Identity(user_id=user.id, email=user.email)


def build_identity_provider(
    mode: str, environment: str, db: BaseDBManager, dev_user_id: str
) -> IdentityProvider:
    if mode == "static":
        if environment != "development":
            raise ValueError("static identity provider is only allowed in development")
        return StaticIdentityProvider(
            Identity(user_id=dev_user_id, email="dev@local.test", is_platform_admin=True)
        )
    if mode == "trusted_header":
        return TrustedHeaderIdentityProvider(db)
    raise ValueError(f"unknown identity mode: {mode}")


class ExternalUserResolver:
    """
    Maps a brand-scoped external user id onto one internal account.

    Creation relies on the store's unique `identity_key`, so concurrent
    first-touch calls converge on a single account.
    """

    def __init__(self, db: BaseDBManager) -> None:
        self._db = db

    @staticmethod
    def _key(brand_id: str, external_user_id: str) -> str:
        if not external_user_id or not external_user_id.strip():
            raise ValidationError("externalUserId is required and must be non-empty")
        return integration_identity_key(brand_id, external_user_id)

    async def find(self, brand_id: str, external_user_id: str) -> Optional[UserAccount]:
        return await self._db.find_user_by_identity_key(self._key(brand_id, external_user_id))

    async def find_or_create(self, brand_id: str, external_user_id: str) -> UserAccount:
        key = self._key(brand_id, external_user_id)
        existing = await self._db.find_user_by_identity_key(key)
        if existing is not None:
            return existing
        return await self._db.get_or_create_user(
            UserAccount(
                identity_key=key,
                brand_id=brand_id,
                external_user_id=external_user_id,
            )
        )
