from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from loyalty_ledger.db.memory import InMemoryDBManager
from loyalty_ledger.errors import (
    InfrastructureError,
    InsufficientBalanceError,
    LedgerInvariantError,
    ValidationError,
)
from loyalty_ledger.models.audit import AuditEvent
from loyalty_ledger.models.ledger import LedgerEntryType


class AuditDownDB(InMemoryDBManager):
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        raise InfrastructureError("audit store down")


@pytest.mark.asyncio
async def test_mint_and_burn_conserve_points(services):
    engine = services.engine
    minted = [Decimal("100"), Decimal("12.5"), Decimal("0.25")]
    burned = [Decimal("40"), Decimal("2.75")]

    for amount in minted:
        await engine.mint_points("brand-1", "user-1", amount, "purchase")
    for amount in burned:
        await engine.burn_points("brand-1", "user-1", amount, "spend")

    expected = sum(minted) - sum(burned)
    assert await services.balance.get_true_balance("brand-1", "user-1") == expected
    assert await engine.get_user_balance("brand-1", "user-1") == expected


@pytest.mark.asyncio
async def test_mint_returns_immutable_positive_entry(services):
    entry = await services.engine.mint_points(
        "brand-1", "user-1", 100, "purchase", metadata={"orderId": "o-1"}
    )

    assert entry.id
    assert entry.entry_type == LedgerEntryType.MINT
    assert entry.amount == Decimal("100")
    assert entry.metadata == {"orderId": "o-1"}


@pytest.mark.asyncio
async def test_mint_rejects_invalid_amount(services):
    with pytest.raises(ValidationError):
        await services.engine.mint_points("brand-1", "user-1", 0, "purchase")
    with pytest.raises(ValidationError):
        await services.engine.mint_points("brand-1", "user-1", -10, "purchase")

    assert await services.engine.get_user_balance("brand-1", "user-1") == 0


@pytest.mark.asyncio
async def test_metadata_is_size_bounded(make_services):
    services = make_services(max_metadata_bytes=64)

    with pytest.raises(ValidationError, match="metadata"):
        await services.engine.mint_points(
            "brand-1", "user-1", 10, "purchase", metadata={"blob": "x" * 100}
        )


@pytest.mark.asyncio
async def test_burn_checks_balance_itself(services):
    await services.engine.mint_points("brand-1", "user-1", 30, "purchase")

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await services.engine.burn_points("brand-1", "user-1", 31, "spend")

    assert exc_info.value.required == Decimal("31")
    assert exc_info.value.available == Decimal("30")
    assert await services.engine.get_user_balance("brand-1", "user-1") == 30


@pytest.mark.asyncio
async def test_concurrent_burns_never_overdraw(services):
    await services.engine.mint_points("brand-1", "user-1", 100, "purchase")

    results = await asyncio.gather(
        *(services.engine.burn_points("brand-1", "user-1", 30, "spend") for _ in range(5)),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, InsufficientBalanceError)]
    assert len(succeeded) == 3
    assert len(failed) == 2
    assert await services.balance.get_true_balance("brand-1", "user-1") == 10


@pytest.mark.asyncio
async def test_balance_is_scoped_per_brand(services):
    await services.engine.mint_points("brand-1", "user-1", 50, "purchase")
    await services.engine.mint_points("brand-2", "user-1", 5, "purchase")

    assert await services.engine.get_user_balance("brand-1", "user-1") == 50
    assert await services.engine.get_user_balance("brand-2", "user-1") == 5
    assert await services.engine.has_sufficient_balance("brand-2", "user-1", 5)
    assert not await services.engine.has_sufficient_balance("brand-2", "user-1", 6)


@pytest.mark.asyncio
async def test_issue_points_reports_new_balance(services):
    await services.engine.mint_points("brand-1", "user-1", 25, "purchase")

    result = await services.engine.issue_points("brand-1", "user-1", 75)

    assert result.ledger_entry_id
    assert result.new_balance == Decimal("100")


@pytest.mark.asyncio
async def test_negative_true_balance_is_floored_at_zero(services):
    """A burn written straight to the store bypasses the sufficiency check."""
    await services.engine.mint_points("brand-1", "user-1", 10, "purchase")
    await services.ledger_store.append(
        "brand-1", "user-1", LedgerEntryType.BURN, Decimal("25"), "unchecked"
    )

    assert await services.balance.get_true_balance("brand-1", "user-1") == Decimal("-15")
    assert await services.engine.get_user_balance("brand-1", "user-1") == 0


@pytest.mark.asyncio
async def test_negative_true_balance_fails_loudly_in_strict_mode(make_services):
    services = make_services(strict_balance_invariant=True)
    await services.ledger_store.append(
        "brand-1", "user-1", LedgerEntryType.BURN, Decimal("1"), "unchecked"
    )

    with pytest.raises(LedgerInvariantError):
        await services.engine.get_user_balance("brand-1", "user-1")


@pytest.mark.asyncio
async def test_audit_store_failure_does_not_fail_committed_writes(make_services):
    services = make_services(db=AuditDownDB())

    entry = await services.engine.mint_points("brand-1", "user-1", 100, "purchase")
    await services.engine.burn_points("brand-1", "user-1", 30, "spend")
    redemption = await services.redemptions.create_redemption("brand-1", "user-1", 20)

    assert entry.id
    assert redemption.id
    assert await services.balance.get_true_balance("brand-1", "user-1") == 50


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "amount",
    ["1234567890123456789012345678.9", "0.123456789", "1E+25"],
)
async def test_amounts_beyond_precision_bounds_rejected(services, amount):
    with pytest.raises(ValidationError):
        await services.engine.mint_points("brand-1", "user-1", amount, "purchase")

    assert await services.balance.get_true_balance("brand-1", "user-1") == 0


@pytest.mark.asyncio
async def test_wide_amounts_sum_exactly(make_services):
    services = make_services(amount_max_digits=30, amount_max_scale=1)

    for _ in range(2):
        await services.engine.mint_points(
            "brand-1", "user-1", "12345678901234567890123456789.9", "purchase"
        )

    assert await services.balance.get_true_balance("brand-1", "user-1") == Decimal(
        "24691357802469135780246913579.8"
    )


@pytest.mark.asyncio
async def test_idle_balance_locks_are_released(services):
    await services.engine.mint_points("brand-1", "user-1", 100, "purchase")
    await asyncio.gather(
        *(services.engine.burn_points("brand-1", "user-1", 10, "spend") for _ in range(3)),
        services.engine.issue_points("brand-1", "user-2", 5),
    )

    assert services.db._locks == {}
    assert services.db._lock_users == {}
