from __future__ import annotations

import hashlib
import logging
import secrets
from typing import Iterable, Tuple

from ..db.base import BaseDBManager
from ..errors import AuthenticationError, BrandAccessError, NotFoundError, ValidationError
from ..logging.audit_logger import AuditLogger
from ..models.base import utcnow
from ..models.brand import BrandApiKey, IntegrationContext

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "rk_"


def generate_api_key() -> Tuple[str, str]:
    """Return `(raw_key, hash)`. Show the raw key once; store only the hash."""
    raw_key = API_KEY_PREFIX + secrets.token_urlsafe(32)
    return raw_key, hash_api_key(raw_key)


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


class ApiKeyService:
    def __init__(self, db: BaseDBManager, audit: AuditLogger) -> None:
        self._db = db
        self._audit = audit

    async def create_api_key(self, brand_id: str, name: str) -> Tuple[BrandApiKey, str]:
        if not name or not name.strip():
            raise ValidationError("api key name must be non-empty")
        brand = await self._db.get_brand(brand_id)
        if brand is None:
            raise NotFoundError("brand", brand_id)

        raw_key, key_hash = generate_api_key()
        api_key = await self._db.add_api_key(
            BrandApiKey(brand_id=brand_id, name=name.strip(), key_hash=key_hash)
        )
        await self._audit.log_transaction(
            message="API key created",
            details={"api_key_id": api_key.id, "name": api_key.name},
            brand_id=brand_id,
        )
        return api_key, raw_key

    async def authenticate(self, raw_key: str) -> IntegrationContext:
        if not raw_key:
            raise AuthenticationError("API key required")

        api_key = await self._db.get_api_key_by_hash(hash_api_key(raw_key))
        if api_key is None or not api_key.is_active or api_key.id is None:
            logger.info("Rejected invalid API key")
            raise AuthenticationError("Invalid API key")

        brand = await self._db.get_brand(api_key.brand_id)
        if brand is None or not brand.accepts_integrations():
            raise BrandAccessError("Brand is inactive or suspended")

        await self._touch(api_key)
        return IntegrationContext(brand_id=api_key.brand_id, api_key_id=api_key.id)

    async def _touch(self, api_key: BrandApiKey) -> None:
        # Best effort: bookkeeping must not reject an authenticated call.
        api_key.last_used_at = utcnow()
        try:
            await self._db.update_api_key(api_key)
        except Exception:
            logger.exception("Failed to update API key last_used_at", extra={"api_key_id": api_key.id})

    async def disable_api_key(self, brand_id: str, api_key_id: str) -> BrandApiKey:
        api_key = await self._db.get_api_key(api_key_id)
        if api_key is None or api_key.brand_id != brand_id:
            raise NotFoundError("api key", api_key_id)
        if not api_key.is_active:
            return api_key
        api_key.is_active = False
        api_key = await self._db.update_api_key(api_key)
        await self._audit.log_transaction(
            message="API key disabled",
            details={"api_key_id": api_key_id},
            brand_id=brand_id,
        )
        return api_key

    async def list_api_keys(self, brand_id: str) -> Iterable[BrandApiKey]:
        return await self._db.list_api_keys(brand_id)
