from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncIterator, FrozenSet, Iterable, Optional, Tuple

from ..models.audit import AuditEvent
from ..models.brand import Brand, BrandApiKey
from ..models.fraud import FraudFlag, FraudStatus
from ..models.ledger import LedgerEntry, LedgerEntryType, LedgerTotals
from ..models.redemption import Redemption
from ..models.user import UserAccount


BalanceKey = Tuple[str, str]

# Keys whose balance lock the current task already holds.
_held_balance_locks: ContextVar[FrozenSet[BalanceKey]] = ContextVar(
    "held_balance_locks", default=frozenset()
)


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB, ...) implement the
    abstract methods. Two primitives give the services their atomicity:

    - `balance_lock(brand_id, user_id)` serializes every check-then-write
      sequence against one (brand, user) balance. It is re-entrant within
      a task so a service holding the lock can call another service that
      takes it too.
    - `transaction()` makes a group of writes all-or-nothing. Nested calls
      join the outermost transaction.
    """

    @asynccontextmanager
    async def balance_lock(self, brand_id: str, user_id: str) -> AsyncIterator[None]:
        key = (brand_id, user_id)
        held = _held_balance_locks.get()
        if key in held:
            yield
            return

        token = await self._acquire_balance_lock(key)
        reset = _held_balance_locks.set(held | {key})
        try:
            yield
        finally:
            _held_balance_locks.reset(reset)
            await self._release_balance_lock(key, token)

    @abstractmethod
    async def _acquire_balance_lock(self, key: BalanceKey) -> object:
        """Block until the lock for `key` is held; return a release token."""

    @abstractmethod
    async def _release_balance_lock(self, key: BalanceKey, token: object) -> None: ...

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context if the backend supports it.
        Should rollback on exception and commit on success.
        """
        yield

    # Ledger
    @abstractmethod
    async def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    @abstractmethod
    async def get_ledger_totals(self, brand_id: str, user_id: str) -> LedgerTotals:
        """Sum MINT and BURN amounts for the pair in one round-trip."""

    @abstractmethod
    async def count_ledger_entries_since(
        self,
        brand_id: str,
        user_id: str,
        entry_type: LedgerEntryType,
        since: datetime,
    ) -> int: ...

    @abstractmethod
    async def list_ledger_entries(
        self,
        brand_id: str,
        user_id: str,
        before: Optional[datetime],
        limit: int,
        entry_type: Optional[LedgerEntryType] = None,
        reason: Optional[str] = None,
    ) -> Iterable[LedgerEntry]:
        """Entries strictly older than `before`, newest first."""

    # Users
    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def find_user_by_identity_key(self, identity_key: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def get_or_create_user(self, user: UserAccount) -> UserAccount:
        """
        Insert `user` unless an account with the same `identity_key` exists,
        in which case the existing one is returned. Must be atomic in the
        store, not just check-then-insert in the application.
        """

    # Brands & API keys
    @abstractmethod
    async def add_brand(self, brand: Brand) -> Brand: ...

    @abstractmethod
    async def get_brand(self, brand_id: str) -> Optional[Brand]: ...

    @abstractmethod
    async def update_brand(self, brand: Brand) -> Brand: ...

    @abstractmethod
    async def add_api_key(self, api_key: BrandApiKey) -> BrandApiKey: ...

    @abstractmethod
    async def get_api_key(self, api_key_id: str) -> Optional[BrandApiKey]: ...

    @abstractmethod
    async def get_api_key_by_hash(self, key_hash: str) -> Optional[BrandApiKey]: ...

    @abstractmethod
    async def update_api_key(self, api_key: BrandApiKey) -> BrandApiKey: ...

    @abstractmethod
    async def list_api_keys(self, brand_id: str) -> Iterable[BrandApiKey]: ...

    # Redemptions
    @abstractmethod
    async def add_redemption(self, redemption: Redemption) -> Redemption: ...

    @abstractmethod
    async def get_redemption(self, redemption_id: str) -> Optional[Redemption]: ...

    @abstractmethod
    async def update_redemption(self, redemption: Redemption) -> Redemption: ...

    @abstractmethod
    async def list_redemptions(
        self,
        brand_id: str,
        user_id: Optional[str],
        limit: int,
        offset: int,
    ) -> Tuple[Iterable[Redemption], int]:
        """Newest first, with the total count of matching redemptions."""

    # Fraud flags
    @abstractmethod
    async def add_fraud_flag(self, flag: FraudFlag) -> FraudFlag: ...

    @abstractmethod
    async def get_fraud_flag(self, flag_id: str) -> Optional[FraudFlag]: ...

    @abstractmethod
    async def update_fraud_flag(self, flag: FraudFlag) -> FraudFlag: ...

    @abstractmethod
    async def list_fraud_flags(
        self,
        brand_id: Optional[str],
        status: Optional[FraudStatus],
        limit: int,
        offset: int,
    ) -> Iterable[FraudFlag]: ...

    # Audit
    @abstractmethod
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent: ...
