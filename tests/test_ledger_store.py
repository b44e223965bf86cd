from __future__ import annotations

from decimal import Decimal

import pytest

from loyalty_ledger.db.memory import InMemoryDBManager
from loyalty_ledger.errors import ValidationError
from loyalty_ledger.models.ledger import LedgerEntryType
from loyalty_ledger.services.ledger_store import LedgerStore


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, "NaN", "Infinity", True, "abc"])
async def test_append_rejects_non_positive_or_non_numeric(amount):
    store = LedgerStore(InMemoryDBManager())

    with pytest.raises(ValidationError):
        await store.append("brand-1", "user-1", LedgerEntryType.MINT, amount, "purchase")


@pytest.mark.asyncio
async def test_append_keeps_decimal_precision():
    db = InMemoryDBManager()
    store = LedgerStore(db)

    for _ in range(10):
        await store.append("brand-1", "user-1", LedgerEntryType.MINT, 0.1, "purchase")

    totals = await db.get_ledger_totals("brand-1", "user-1")
    assert totals.minted == Decimal("1.0")


@pytest.mark.asyncio
async def test_history_pages_strictly_descending():
    store = LedgerStore(InMemoryDBManager())
    for i in range(1, 6):
        await store.append("brand-1", "user-1", LedgerEntryType.MINT, i, f"mint-{i}")
    await store.append("brand-1", "other-user", LedgerEntryType.MINT, 99, "other")

    first = await store.history("brand-1", "user-1", limit=2)
    assert [e.reason for e in first.items] == ["mint-5", "mint-4"]
    assert first.has_more is True
    assert first.next_cursor == first.items[-1].created_at

    second = await store.history("brand-1", "user-1", cursor=first.next_cursor, limit=2)
    assert [e.reason for e in second.items] == ["mint-3", "mint-2"]

    last = await store.history("brand-1", "user-1", cursor=second.next_cursor, limit=2)
    assert [e.reason for e in last.items] == ["mint-1"]
    assert last.has_more is False
    assert last.next_cursor is None


@pytest.mark.asyncio
async def test_history_filters_and_page_cap():
    store = LedgerStore(InMemoryDBManager(), page_max=3)
    for _ in range(5):
        await store.append("brand-1", "user-1", LedgerEntryType.MINT, 10, "purchase")
    await store.append("brand-1", "user-1", LedgerEntryType.BURN, 5, "redemption")

    burns = await store.history("brand-1", "user-1", entry_type=LedgerEntryType.BURN)
    assert [e.entry_type for e in burns.items] == [LedgerEntryType.BURN]

    purchases = await store.history("brand-1", "user-1", limit=100, reason="purchase")
    assert len(purchases.items) == 3
    assert purchases.has_more is True

    with pytest.raises(ValidationError):
        await store.history("brand-1", "user-1", limit=0)


@pytest.mark.asyncio
async def test_trailing_zeros_do_not_count_against_scale():
    store = LedgerStore(InMemoryDBManager())

    entry = await store.append(
        "brand-1", "user-1", LedgerEntryType.MINT, "1.50000000000", "purchase"
    )

    assert entry.amount == Decimal("1.5")
