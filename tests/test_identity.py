from __future__ import annotations

import asyncio

import pytest

from loyalty_ledger.db.memory import InMemoryDBManager
from loyalty_ledger.errors import AuthenticationError, ValidationError
from loyalty_ledger.models.user import UserAccount
from loyalty_ledger.services.identity import (
    ExternalUserResolver,
    StaticIdentityProvider,
    TrustedHeaderIdentityProvider,
    build_identity_provider,
)


@pytest.mark.asyncio
async def test_concurrent_first_touch_creates_one_account():
    resolver = ExternalUserResolver(InMemoryDBManager())

    users = await asyncio.gather(
        *(resolver.find_or_create("brand-1", "shopper-42") for _ in range(10))
    )

    assert len({u.id for u in users}) == 1
    assert users[0].identity_key == "integration_brand-1_shopper-42"
    assert users[0].external_user_id == "shopper-42"


@pytest.mark.asyncio
async def test_external_ids_are_brand_scoped():
    resolver = ExternalUserResolver(InMemoryDBManager())

    a = await resolver.find_or_create("brand-1", "shopper-42")
    b = await resolver.find_or_create("brand-2", "shopper-42")
    again = await resolver.find_or_create("brand-1", "shopper-42")

    assert a.id != b.id
    assert again.id == a.id


@pytest.mark.asyncio
async def test_find_does_not_create():
    db = InMemoryDBManager()
    resolver = ExternalUserResolver(db)

    assert await resolver.find("brand-1", "nobody") is None
    assert await db.find_user_by_identity_key("integration_brand-1_nobody") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("external_id", ["", "   "])
async def test_empty_external_id_rejected(external_id):
    resolver = ExternalUserResolver(InMemoryDBManager())

    with pytest.raises(ValidationError):
        await resolver.find_or_create("brand-1", external_id)


def test_static_provider_refused_outside_development():
    with pytest.raises(ValueError):
        build_identity_provider("static", "production", InMemoryDBManager(), "dev-user-id")


def test_unknown_identity_mode():
    with pytest.raises(ValueError):
        build_identity_provider("oauth", "development", InMemoryDBManager(), "dev-user-id")


@pytest.mark.asyncio
async def test_static_provider_in_development():
    provider = build_identity_provider("static", "development", InMemoryDBManager(), "dev-7")

    assert isinstance(provider, StaticIdentityProvider)
    identity = await provider.resolve_caller_identity()
    assert identity.user_id == "dev-7"


@pytest.mark.asyncio
async def test_trusted_header_provider():
    db = InMemoryDBManager()
    user = await db.get_or_create_user(UserAccount(email="ops@example.com"))
    provider = build_identity_provider("trusted_header", "production", db, "unused")

    assert isinstance(provider, TrustedHeaderIdentityProvider)
    identity = await provider.resolve_caller_identity(user.id)
    assert identity.user_id == user.id
    assert identity.email == "ops@example.com"

    with pytest.raises(AuthenticationError):
        await provider.resolve_caller_identity(None)
    with pytest.raises(AuthenticationError):
        await provider.resolve_caller_identity("no-such-user")
