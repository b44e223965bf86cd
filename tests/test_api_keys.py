from __future__ import annotations

import pytest

from loyalty_ledger.errors import (
    AuthenticationError,
    BrandAccessError,
    NotFoundError,
    ValidationError,
)
from loyalty_ledger.models.brand import Brand
from loyalty_ledger.services.api_keys import (
    API_KEY_PREFIX,
    generate_api_key,
    hash_api_key,
)


def test_generated_keys_are_prefixed_and_hashed():
    raw_key, key_hash = generate_api_key()
    other_key, _ = generate_api_key()

    assert raw_key.startswith(API_KEY_PREFIX)
    assert raw_key != other_key
    assert key_hash == hash_api_key(raw_key)
    assert raw_key not in key_hash
    assert hash_api_key(other_key) != key_hash


@pytest.mark.asyncio
async def test_create_and_authenticate(services):
    brand = await services.db.add_brand(Brand(name="Acme"))

    api_key, raw_key = await services.api_keys.create_api_key(brand.id, "  checkout  ")
    ctx = await services.api_keys.authenticate(raw_key)

    assert api_key.name == "checkout"
    assert api_key.key_hash != raw_key
    assert ctx.brand_id == brand.id
    assert ctx.api_key_id == api_key.id
    stored = await services.db.get_api_key(api_key.id)
    assert stored.last_used_at is not None


@pytest.mark.asyncio
async def test_create_validates_input(services):
    brand = await services.db.add_brand(Brand(name="Acme"))

    with pytest.raises(ValidationError):
        await services.api_keys.create_api_key(brand.id, " ")
    with pytest.raises(NotFoundError):
        await services.api_keys.create_api_key("missing-brand", "checkout")


@pytest.mark.asyncio
async def test_authenticate_rejects_bad_keys(services):
    brand = await services.db.add_brand(Brand(name="Acme"))
    api_key, raw_key = await services.api_keys.create_api_key(brand.id, "checkout")

    with pytest.raises(AuthenticationError):
        await services.api_keys.authenticate("")
    with pytest.raises(AuthenticationError):
        await services.api_keys.authenticate(API_KEY_PREFIX + "not-a-real-key")

    await services.api_keys.disable_api_key(brand.id, api_key.id)
    with pytest.raises(AuthenticationError):
        await services.api_keys.authenticate(raw_key)


@pytest.mark.asyncio
async def test_authenticate_rejects_suspended_brand(services):
    brand = await services.db.add_brand(Brand(name="Acme"))
    _, raw_key = await services.api_keys.create_api_key(brand.id, "checkout")

    brand.is_suspended = True
    await services.db.update_brand(brand)

    with pytest.raises(BrandAccessError):
        await services.api_keys.authenticate(raw_key)


@pytest.mark.asyncio
async def test_disable_is_scoped_to_brand(services):
    acme = await services.db.add_brand(Brand(name="Acme"))
    other = await services.db.add_brand(Brand(name="Other"))
    api_key, _ = await services.api_keys.create_api_key(acme.id, "checkout")

    with pytest.raises(NotFoundError):
        await services.api_keys.disable_api_key(other.id, api_key.id)

    disabled = await services.api_keys.disable_api_key(acme.id, api_key.id)
    assert disabled.is_active is False
    assert [k.id for k in await services.api_keys.list_api_keys(acme.id)] == [api_key.id]
