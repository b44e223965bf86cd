from __future__ import annotations

from decimal import Decimal

import pytest

from loyalty_ledger.errors import InsufficientBalanceError, ValidationError
from loyalty_ledger.models.brand import IntegrationContext
from loyalty_ledger.models.ledger import LedgerEntryType
from loyalty_ledger.models.redemption import RedemptionStatus


@pytest.fixture
def ctx() -> IntegrationContext:
    return IntegrationContext(brand_id="brand-1", api_key_id="key-1")


@pytest.mark.asyncio
async def test_issue_creates_user_and_stamps_metadata(services, ctx):
    user, result = await services.integration.issue_points(
        ctx,
        "shopper-42",
        "150.50",
        metadata={"orderId": "o-1", "source": "spoofed"},
    )

    assert user.external_user_id == "shopper-42"
    assert result.new_balance == Decimal("150.50")

    page = await services.ledger_store.history("brand-1", user.id)
    [entry] = page.items
    assert entry.reason == "integration_issue"
    assert entry.metadata == {
        "orderId": "o-1",
        "externalUserId": "shopper-42",
        "source": "api_integration",
        "apiKeyId": "key-1",
    }


@pytest.mark.asyncio
async def test_repeat_issue_reuses_account(services, ctx):
    first, _ = await services.integration.issue_points(ctx, "shopper-42", 10)
    second, result = await services.integration.issue_points(ctx, "shopper-42", 5, reason="bonus")

    assert first.id == second.id
    assert result.new_balance == Decimal("15")


@pytest.mark.asyncio
async def test_balance_of_unknown_user_is_zero_and_creates_nothing(services, ctx):
    user, balance = await services.integration.get_balance(ctx, "ghost")

    assert user is None
    assert balance == 0
    assert await services.resolver.find("brand-1", "ghost") is None


@pytest.mark.asyncio
async def test_redeem_uses_shared_redemption_path(services, ctx):
    user, _ = await services.integration.issue_points(ctx, "shopper-42", 100)

    redemption = await services.integration.redeem_points(
        ctx, "shopper-42", 40, campaign_id="camp-1"
    )

    assert redemption.status == RedemptionStatus.COMPLETED
    assert redemption.user_id == user.id
    assert redemption.metadata["source"] == "api_integration"
    _, balance = await services.integration.get_balance(ctx, "shopper-42")
    assert balance == Decimal("60")

    page = await services.ledger_store.history(
        "brand-1", user.id, entry_type=LedgerEntryType.BURN
    )
    assert page.items[0].metadata["redemptionId"] == redemption.id


@pytest.mark.asyncio
async def test_redeem_for_unknown_user_is_insufficient(services, ctx):
    with pytest.raises(InsufficientBalanceError) as exc_info:
        await services.integration.redeem_points(ctx, "ghost", 5)

    assert exc_info.value.available == 0
    assert await services.resolver.find("brand-1", "ghost") is None


@pytest.mark.asyncio
async def test_issue_validates_points(services, ctx):
    with pytest.raises(ValidationError):
        await services.integration.issue_points(ctx, "shopper-42", -1)
    with pytest.raises(ValidationError):
        await services.integration.issue_points(ctx, "", 10)
