from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar, cast

from .base import BalanceKey, BaseDBManager
from ..errors import InfrastructureError
from ..models.audit import AuditEvent
from ..models.base import DBSerializableModel, sum_context
from ..models.brand import Brand, BrandApiKey
from ..models.fraud import FraudFlag, FraudStatus
from ..models.ledger import LedgerEntry, LedgerEntryType, LedgerTotals
from ..models.redemption import Redemption
from ..models.user import UserAccount


TModel = TypeVar("TModel", bound=DBSerializableModel)

# Undo callbacks of the transaction the current task is running in.
_undo_journal: ContextVar[Optional[List[Callable[[], None]]]] = ContextVar(
    "memory_undo_journal", default=None
)


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Records are copied in and out so callers never alias stored state.
    `transaction()` keeps an undo journal and replays it on error, which is
    enough to make the redemption unit all-or-nothing.
    """

    def __init__(self, lock_timeout: Optional[float] = None) -> None:
        self._ledger: List[LedgerEntry] = []
        self._users: Dict[str, UserAccount] = {}
        self._users_by_identity: Dict[str, str] = {}
        self._brands: Dict[str, Brand] = {}
        self._api_keys: Dict[str, BrandApiKey] = {}
        self._redemptions: Dict[str, Redemption] = {}
        self._fraud_flags: Dict[str, FraudFlag] = {}
        self._audit: List[AuditEvent] = []
        self._locks: Dict[BalanceKey, asyncio.Lock] = {}
        self._lock_users: Dict[BalanceKey, int] = {}
        self._lock_timeout = lock_timeout
        self._last_ledger_ts: Optional[datetime] = None
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @staticmethod
    def _copy(model: TModel) -> TModel:
        return model.model_copy(deep=True)

    @staticmethod
    def _record_undo(action: Callable[[], None]) -> None:
        journal = _undo_journal.get()
        if journal is not None:
            journal.append(action)

    async def _acquire_balance_lock(self, key: BalanceKey) -> object:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._lock_timeout)
        except asyncio.TimeoutError as exc:
            self._forget_lock_user(key)
            raise InfrastructureError(f"timed out waiting for balance lock {key}") from exc
        except BaseException:
            self._forget_lock_user(key)
            raise
        return lock

    async def _release_balance_lock(self, key: BalanceKey, token: object) -> None:
        cast(asyncio.Lock, token).release()
        self._forget_lock_user(key)

    def _forget_lock_user(self, key: BalanceKey) -> None:
        # Drop the lock once no task holds or waits for it.
        remaining = self._lock_users[key] - 1
        if remaining:
            self._lock_users[key] = remaining
        else:
            del self._lock_users[key]
            del self._locks[key]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _undo_journal.get() is not None:
            yield
            return

        journal: List[Callable[[], None]] = []
        reset = _undo_journal.set(journal)
        try:
            yield
        except BaseException:
            for undo in reversed(journal):
                undo()
            raise
        finally:
            _undo_journal.reset(reset)

    # Ledger
    async def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        # Keep created_at strictly increasing so cursors never skip ties.
        if self._last_ledger_ts is not None and entry.created_at <= self._last_ledger_ts:
            entry.created_at = self._last_ledger_ts + timedelta(microseconds=1)
        self._last_ledger_ts = entry.created_at

        stored = self._copy(entry)
        self._ledger.append(stored)
        self._record_undo(lambda: self._ledger.remove(stored))
        return entry

    def _pair_entries(self, brand_id: str, user_id: str) -> Iterable[LedgerEntry]:
        return (e for e in self._ledger if e.brand_id == brand_id and e.user_id == user_id)

    async def get_ledger_totals(self, brand_id: str, user_id: str) -> LedgerTotals:
        totals = LedgerTotals()
        with sum_context():
            for entry in self._pair_entries(brand_id, user_id):
                if entry.entry_type == LedgerEntryType.MINT:
                    totals.minted += entry.amount
                else:
                    totals.burned += entry.amount
        return totals

    async def count_ledger_entries_since(
        self,
        brand_id: str,
        user_id: str,
        entry_type: LedgerEntryType,
        since: datetime,
    ) -> int:
        return sum(
            1
            for e in self._pair_entries(brand_id, user_id)
            if e.entry_type == entry_type and e.created_at >= since
        )

    async def list_ledger_entries(
        self,
        brand_id: str,
        user_id: str,
        before: Optional[datetime],
        limit: int,
        entry_type: Optional[LedgerEntryType] = None,
        reason: Optional[str] = None,
    ) -> Iterable[LedgerEntry]:
        matches = [
            e
            for e in self._pair_entries(brand_id, user_id)
            if (before is None or e.created_at < before)
            and (entry_type is None or e.entry_type == entry_type)
            and (reason is None or e.reason == reason)
        ]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return [self._copy(e) for e in matches[:limit]]

    # Users
    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        user = self._users.get(user_id)
        return self._copy(user) if user else None

    async def find_user_by_identity_key(self, identity_key: str) -> Optional[UserAccount]:
        user_id = self._users_by_identity.get(identity_key)
        return await self.get_user(user_id) if user_id else None

    async def get_or_create_user(self, user: UserAccount) -> UserAccount:
        # No await between lookup and insert: atomic on the event loop.
        if user.identity_key is not None:
            existing_id = self._users_by_identity.get(user.identity_key)
            if existing_id is not None:
                return self._copy(self._users[existing_id])
        if user.id is None:
            user.id = self._next_id()
        self._users[user.id] = self._copy(user)
        if user.identity_key is not None:
            self._users_by_identity[user.identity_key] = user.id
        return user

    # Brands & API keys
    async def add_brand(self, brand: Brand) -> Brand:
        if brand.id is None:
            brand.id = self._next_id()
        self._brands[brand.id] = self._copy(brand)
        return brand

    async def get_brand(self, brand_id: str) -> Optional[Brand]:
        brand = self._brands.get(brand_id)
        return self._copy(brand) if brand else None

    async def update_brand(self, brand: Brand) -> Brand:
        if brand.id is None:
            raise ValueError("Brand must have id to be updated")
        self._brands[brand.id] = self._copy(brand)
        return brand

    async def add_api_key(self, api_key: BrandApiKey) -> BrandApiKey:
        if api_key.id is None:
            api_key.id = self._next_id()
        if any(k.key_hash == api_key.key_hash for k in self._api_keys.values()):
            raise ValueError("duplicate api key hash")
        self._api_keys[api_key.id] = self._copy(api_key)
        return api_key

    async def get_api_key(self, api_key_id: str) -> Optional[BrandApiKey]:
        api_key = self._api_keys.get(api_key_id)
        return self._copy(api_key) if api_key else None

    async def get_api_key_by_hash(self, key_hash: str) -> Optional[BrandApiKey]:
        for api_key in self._api_keys.values():
            if api_key.key_hash == key_hash:
                return self._copy(api_key)
        return None

    async def update_api_key(self, api_key: BrandApiKey) -> BrandApiKey:
        if api_key.id is None:
            raise ValueError("BrandApiKey must have id to be updated")
        self._api_keys[api_key.id] = self._copy(api_key)
        return api_key

    async def list_api_keys(self, brand_id: str) -> Iterable[BrandApiKey]:
        keys = [self._copy(k) for k in self._api_keys.values() if k.brand_id == brand_id]
        keys.sort(key=lambda k: k.created_at, reverse=True)
        return keys

    # Redemptions
    async def add_redemption(self, redemption: Redemption) -> Redemption:
        if redemption.id is None:
            redemption.id = self._next_id()
        redemption_id = redemption.id
        self._redemptions[redemption_id] = self._copy(redemption)
        self._record_undo(lambda: self._redemptions.pop(redemption_id, None))
        return redemption

    async def get_redemption(self, redemption_id: str) -> Optional[Redemption]:
        redemption = self._redemptions.get(redemption_id)
        return self._copy(redemption) if redemption else None

    async def update_redemption(self, redemption: Redemption) -> Redemption:
        if redemption.id is None:
            raise ValueError("Redemption must have id to be updated")
        redemption_id = redemption.id
        previous = self._redemptions.get(redemption_id)
        self._redemptions[redemption_id] = self._copy(redemption)
        if previous is not None:
            self._record_undo(lambda: self._redemptions.__setitem__(redemption_id, previous))
        return redemption

    async def list_redemptions(
        self,
        brand_id: str,
        user_id: Optional[str],
        limit: int,
        offset: int,
    ) -> Tuple[Iterable[Redemption], int]:
        matches = [
            r
            for r in self._redemptions.values()
            if r.brand_id == brand_id and (user_id is None or r.user_id == user_id)
        ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        page = [self._copy(r) for r in matches[offset : offset + limit]]
        return page, len(matches)

    # Fraud flags
    async def add_fraud_flag(self, flag: FraudFlag) -> FraudFlag:
        if flag.id is None:
            flag.id = self._next_id()
        self._fraud_flags[flag.id] = self._copy(flag)
        return flag

    async def get_fraud_flag(self, flag_id: str) -> Optional[FraudFlag]:
        flag = self._fraud_flags.get(flag_id)
        return self._copy(flag) if flag else None

    async def update_fraud_flag(self, flag: FraudFlag) -> FraudFlag:
        if flag.id is None:
            raise ValueError("FraudFlag must have id to be updated")
        self._fraud_flags[flag.id] = self._copy(flag)
        return flag

    async def list_fraud_flags(
        self,
        brand_id: Optional[str],
        status: Optional[FraudStatus],
        limit: int,
        offset: int,
    ) -> Iterable[FraudFlag]:
        matches = [
            f
            for f in self._fraud_flags.values()
            if (brand_id is None or f.brand_id == brand_id)
            and (status is None or f.status == status)
        ]
        matches.sort(key=lambda f: f.created_at, reverse=True)
        return [self._copy(f) for f in matches[offset : offset + limit]]

    # Audit
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        if event.id is None:
            event.id = self._next_id()
        self._audit.append(self._copy(event))
        return event
