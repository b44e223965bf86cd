from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from loyalty_ledger.db.memory import InMemoryDBManager
from loyalty_ledger.errors import NotFoundError
from loyalty_ledger.models.base import utcnow
from loyalty_ledger.models.fraud import FraudFlag, FraudGateConfig, FraudSeverity, FraudStatus
from loyalty_ledger.services.fraud_gate import FraudGate


class FlagWriteFailingDB(InMemoryDBManager):
    async def add_fraud_flag(self, flag: FraudFlag) -> FraudFlag:
        raise RuntimeError("flag store down")


@pytest.mark.asyncio
async def test_large_mint_succeeds_and_raises_one_high_flag(services):
    entry = await services.engine.mint_points("brand-1", "user-1", 10001, "purchase")

    assert entry.id
    assert await services.engine.get_user_balance("brand-1", "user-1") == Decimal("10001")

    flags = list(await services.fraud_gate.list_flags(brand_id="brand-1"))
    assert len(flags) == 1
    assert flags[0].severity == FraudSeverity.HIGH
    assert flags[0].status == FraudStatus.PENDING
    assert flags[0].details["amount"] == "10001"


@pytest.mark.asyncio
async def test_threshold_amount_itself_is_not_flagged(services):
    await services.engine.mint_points("brand-1", "user-1", 10000, "purchase")

    assert list(await services.fraud_gate.list_flags()) == []


@pytest.mark.asyncio
async def test_velocity_flag_after_more_than_max_mints(services):
    for _ in range(11):
        await services.engine.mint_points("brand-1", "user-1", 1, "purchase")
    assert list(await services.fraud_gate.list_flags()) == []

    # The twelfth mint sees eleven prior mints in the window.
    await services.engine.mint_points("brand-1", "user-1", 1, "purchase")

    flags = list(await services.fraud_gate.list_flags())
    assert [f.severity for f in flags] == [FraudSeverity.MEDIUM]
    assert await services.engine.get_user_balance("brand-1", "user-1") == 12


@pytest.mark.asyncio
async def test_velocity_window_and_threshold_are_configurable(services):
    for _ in range(3):
        await services.engine.mint_points("brand-1", "user-1", 1, "purchase")

    strict = FraudGate(
        services.db,
        services.ledger_store,
        services.audit,
        config=FraudGateConfig(window_minutes=5, max_mints_per_window=2),
    )
    result = await strict.run_checks("brand-1", "user-1", Decimal("1"))
    assert result.velocity_flagged
    assert not result.large_amount_flagged

    later = FraudGate(
        services.db,
        services.ledger_store,
        services.audit,
        config=FraudGateConfig(window_minutes=5, max_mints_per_window=2),
        clock=lambda: utcnow() + timedelta(minutes=10),
    )
    result = await later.run_checks("brand-1", "user-1", Decimal("1"))
    assert not result.velocity_flagged


@pytest.mark.asyncio
async def test_flag_write_failure_does_not_block_mint(make_services):
    services = make_services(db=FlagWriteFailingDB())

    entry = await services.engine.mint_points("brand-1", "user-1", 50000, "purchase")

    assert entry.id
    assert await services.engine.get_user_balance("brand-1", "user-1") == 50000


@pytest.mark.asyncio
async def test_review_flag_is_idempotent_and_leaves_ledger_alone(services):
    await services.engine.mint_points("brand-1", "user-1", 20000, "purchase")
    [flag] = list(await services.fraud_gate.list_flags())

    reviewed = await services.fraud_gate.review_flag(flag.id, "admin-1", FraudStatus.REVIEWED)
    again = await services.fraud_gate.review_flag(flag.id, "admin-1", FraudStatus.REVIEWED)

    assert reviewed.status == FraudStatus.REVIEWED
    assert reviewed.reviewed_by == "admin-1"
    assert again.reviewed_at == reviewed.reviewed_at
    assert await services.engine.get_user_balance("brand-1", "user-1") == 20000

    pending = list(await services.fraud_gate.list_flags(status=FraudStatus.PENDING))
    assert pending == []


@pytest.mark.asyncio
async def test_review_unknown_flag(services):
    with pytest.raises(NotFoundError):
        await services.fraud_gate.review_flag("missing", "admin-1", FraudStatus.DISMISSED)


@pytest.mark.asyncio
async def test_mint_audit_records_fraud_outcome(services):
    await services.engine.mint_points("brand-1", "user-1", 20000, "purchase")
    await services.engine.mint_points("brand-1", "user-1", 5, "purchase")

    minted = [e for e in services.db._audit if e.message == "Points minted"]
    assert [e.details["fraud_flagged"] for e in minted] == [True, False]
