from __future__ import annotations

import asyncio
import functools
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    TypeVar,
)
from uuid import uuid4

from bson.decimal128 import Decimal128
from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BalanceKey, BaseDBManager
from ..errors import InfrastructureError
from ..models.audit import AuditEvent
from ..models.base import DBSerializableModel, utcnow
from ..models.brand import Brand, BrandApiKey
from ..models.fraud import FraudFlag, FraudStatus
from ..models.ledger import LedgerEntry, LedgerEntryType, LedgerTotals
from ..models.redemption import Redemption
from ..models.user import UserAccount


TModel = TypeVar("TModel", bound=DBSerializableModel)
T = TypeVar("T")

LOCK_COLLECTION = "balance_locks"

_session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
    "mongo_session", default=None
)


def _translate_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except PyMongoError as exc:
            raise InfrastructureError(f"MongoDB operation failed: {exc}") from exc

    return wrapper


def _to_bson(value: Any) -> Any:
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, dict):
        return {k: _to_bson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_bson(v) for v in value]
    return value


def _from_bson(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: _from_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_bson(v) for v in value]
    return value


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics. Amounts are stored as Decimal128.

    Balance locks are lease-based documents in `balance_locks`; a crashed
    holder's lock is stolen once its lease expires. `transaction()` opens a
    multi-document session transaction, which needs a replica set or a
    sharded cluster. With `use_transactions` off it raises instead of
    running the writes one by one.

    BSON dates keep milliseconds, so ledger timestamps are truncated on
    write and bumped to stay strictly increasing within a pair.
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        client: Optional[AsyncIOMotorClient] = None,
        use_transactions: bool = True,
        lock_timeout: float = 5.0,
        lock_lease: float = 30.0,
    ) -> None:
        self._db = database
        self._client = client or database.client
        self._use_transactions = use_transactions
        self._lock_timeout = lock_timeout
        self._lock_lease = lock_lease

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str, **kwargs: Any) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name], client=client, **kwargs)

    @_translate_errors
    async def ensure_indexes(self) -> None:
        await self._db[LedgerEntry.collection_name].create_index(
            [("brand_id", ASCENDING), ("user_id", ASCENDING), ("created_at", DESCENDING)]
        )
        await self._db[Redemption.collection_name].create_index(
            [("brand_id", ASCENDING), ("user_id", ASCENDING), ("created_at", DESCENDING)]
        )
        await self._db[FraudFlag.collection_name].create_index(
            [("brand_id", ASCENDING), ("status", ASCENDING)]
        )
        await self._db[UserAccount.collection_name].create_index(
            "identity_key",
            unique=True,
            partialFilterExpression={"identity_key": {"$type": "string"}},
        )
        await self._db[BrandApiKey.collection_name].create_index("key_hash", unique=True)

    @_translate_errors
    async def check_transaction_support(self) -> None:
        """Raise unless this deployment can run multi-document transactions."""
        if not self._use_transactions:
            raise InfrastructureError("MongoDB transactions are disabled")
        hello = await self._client.admin.command("hello")
        if "setName" not in hello and hello.get("msg") != "isdbgrid":
            raise InfrastructureError(
                "MongoDB is a standalone server; transactions need a replica set"
            )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _session.get() is not None:
            yield
            return
        if not self._use_transactions:
            raise InfrastructureError(
                "MongoDB transactions are disabled; refusing a non-atomic unit of work"
            )

        try:
            session = await self._client.start_session()
        except PyMongoError as exc:
            raise InfrastructureError(f"could not start MongoDB session: {exc}") from exc
        async with session:
            async with session.start_transaction():
                reset = _session.set(session)
                try:
                    yield
                finally:
                    _session.reset(reset)

    # Balance locks
    @staticmethod
    def _lock_id(key: BalanceKey) -> Dict[str, str]:
        brand_id, user_id = key
        return {"brand_id": brand_id, "user_id": user_id}

    @_translate_errors
    async def _acquire_balance_lock(self, key: BalanceKey) -> object:
        col = self._db[LOCK_COLLECTION]
        owner = uuid4().hex
        lock_id = self._lock_id(key)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._lock_timeout
        delay = 0.01

        while True:
            now = utcnow()
            lease_until = now + timedelta(seconds=self._lock_lease)
            try:
                await col.insert_one({"_id": lock_id, "owner": owner, "expires_at": lease_until})
                return owner
            except DuplicateKeyError:
                stolen = await col.find_one_and_update(
                    {"_id": lock_id, "expires_at": {"$lt": now}},
                    {"$set": {"owner": owner, "expires_at": lease_until}},
                )
                if stolen is not None:
                    return owner

            if loop.time() >= deadline:
                raise InfrastructureError(f"timed out waiting for balance lock {key}")
            await asyncio.sleep(delay)
            delay = min(delay * 2, 0.2)

    @_translate_errors
    async def _release_balance_lock(self, key: BalanceKey, token: object) -> None:
        await self._db[LOCK_COLLECTION].delete_one({"_id": self._lock_id(key), "owner": token})

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return _to_bson(data)

    @staticmethod
    def _prepare_update(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            raise ValueError("Model must have id to be updated")
        data["_id"] = model_id
        return _to_bson(data)

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = _from_bson(dict(doc))
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    def _decode_all(self, model_cls: Type[TModel], docs: List[Mapping[str, Any]]) -> List[TModel]:
        return [m for m in (self._decode(model_cls, d) for d in docs) if m is not None]

    async def _insert(self, model: TModel) -> TModel:
        col = self._db[model.collection_name]
        await col.insert_one(self._prepare_insert(model), session=_session.get())
        return model

    async def _replace(self, model: TModel) -> TModel:
        col = self._db[model.collection_name]
        data = self._prepare_update(model)
        await col.replace_one({"_id": data["_id"]}, data, upsert=False, session=_session.get())
        return model

    async def _find_by_id(self, model_cls: Type[TModel], doc_id: str) -> Optional[TModel]:
        col = self._db[model_cls.collection_name]
        doc = await col.find_one({"_id": doc_id}, session=_session.get())
        return self._decode(model_cls, doc)

    # Ledger
    @staticmethod
    def _to_millis(value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.replace(microsecond=value.microsecond - value.microsecond % 1000)

    @_translate_errors
    async def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        # Callers append under the pair's balance lock, so the latest
        # timestamp cannot move between this read and the insert.
        col = self._db[LedgerEntry.collection_name]
        latest = await col.find_one(
            {"brand_id": entry.brand_id, "user_id": entry.user_id},
            projection={"created_at": True},
            sort=[("created_at", DESCENDING)],
            session=_session.get(),
        )
        created_at = self._to_millis(entry.created_at)
        if latest is not None:
            last = self._to_millis(latest["created_at"])
            if created_at <= last:
                created_at = last + timedelta(milliseconds=1)
        entry.created_at = created_at
        return await self._insert(entry)

    @_translate_errors
    async def get_ledger_totals(self, brand_id: str, user_id: str) -> LedgerTotals:
        col = self._db[LedgerEntry.collection_name]
        pipeline = [
            {"$match": {"brand_id": brand_id, "user_id": user_id}},
            {"$group": {"_id": "$entry_type", "total": {"$sum": "$amount"}}},
        ]
        cursor = col.aggregate(pipeline, session=_session.get())
        totals = LedgerTotals()
        async for row in cursor:
            total = _from_bson(row["total"])
            amount = Decimal(total) if not isinstance(total, Decimal) else total
            if row["_id"] == LedgerEntryType.MINT.value:
                totals.minted = amount
            elif row["_id"] == LedgerEntryType.BURN.value:
                totals.burned = amount
        return totals

    @_translate_errors
    async def count_ledger_entries_since(
        self,
        brand_id: str,
        user_id: str,
        entry_type: LedgerEntryType,
        since: datetime,
    ) -> int:
        col = self._db[LedgerEntry.collection_name]
        return await col.count_documents(
            {
                "brand_id": brand_id,
                "user_id": user_id,
                "entry_type": entry_type.value,
                "created_at": {"$gte": since},
            },
            session=_session.get(),
        )

    @_translate_errors
    async def list_ledger_entries(
        self,
        brand_id: str,
        user_id: str,
        before: Optional[datetime],
        limit: int,
        entry_type: Optional[LedgerEntryType] = None,
        reason: Optional[str] = None,
    ) -> Iterable[LedgerEntry]:
        query: Dict[str, Any] = {"brand_id": brand_id, "user_id": user_id}
        if before is not None:
            query["created_at"] = {"$lt": before}
        if entry_type is not None:
            query["entry_type"] = entry_type.value
        if reason is not None:
            query["reason"] = reason
        col = self._db[LedgerEntry.collection_name]
        cursor = col.find(query, session=_session.get()).sort("created_at", DESCENDING).limit(limit)
        docs = await cursor.to_list(length=limit)
        return self._decode_all(LedgerEntry, docs)

    # Users
    @_translate_errors
    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        return await self._find_by_id(UserAccount, user_id)

    @_translate_errors
    async def find_user_by_identity_key(self, identity_key: str) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one({"identity_key": identity_key}, session=_session.get())
        return self._decode(UserAccount, doc)

    @_translate_errors
    async def get_or_create_user(self, user: UserAccount) -> UserAccount:
        if user.identity_key is None:
            return await self._insert(user)

        col = self._db[UserAccount.collection_name]
        data = self._prepare_insert(user)
        try:
            doc = await col.find_one_and_update(
                {"identity_key": user.identity_key},
                {"$setOnInsert": data},
                upsert=True,
                return_document=ReturnDocument.AFTER,
                session=_session.get(),
            )
        except DuplicateKeyError:
            # Lost a concurrent upsert race; the unique index kept one winner.
            doc = await col.find_one({"identity_key": user.identity_key}, session=_session.get())
        resolved = self._decode(UserAccount, doc)
        if resolved is None:
            raise InfrastructureError(f"user {user.identity_key} vanished after upsert")
        return resolved

    # Brands & API keys
    @_translate_errors
    async def add_brand(self, brand: Brand) -> Brand:
        return await self._insert(brand)

    @_translate_errors
    async def get_brand(self, brand_id: str) -> Optional[Brand]:
        return await self._find_by_id(Brand, brand_id)

    @_translate_errors
    async def update_brand(self, brand: Brand) -> Brand:
        return await self._replace(brand)

    @_translate_errors
    async def add_api_key(self, api_key: BrandApiKey) -> BrandApiKey:
        return await self._insert(api_key)

    @_translate_errors
    async def get_api_key(self, api_key_id: str) -> Optional[BrandApiKey]:
        return await self._find_by_id(BrandApiKey, api_key_id)

    @_translate_errors
    async def get_api_key_by_hash(self, key_hash: str) -> Optional[BrandApiKey]:
        col = self._db[BrandApiKey.collection_name]
        doc = await col.find_one({"key_hash": key_hash}, session=_session.get())
        return self._decode(BrandApiKey, doc)

    @_translate_errors
    async def update_api_key(self, api_key: BrandApiKey) -> BrandApiKey:
        return await self._replace(api_key)

    @_translate_errors
    async def list_api_keys(self, brand_id: str) -> Iterable[BrandApiKey]:
        col = self._db[BrandApiKey.collection_name]
        cursor = col.find({"brand_id": brand_id}, session=_session.get()).sort("created_at", DESCENDING)
        docs = await cursor.to_list(length=None)
        return self._decode_all(BrandApiKey, docs)

    # Redemptions
    @_translate_errors
    async def add_redemption(self, redemption: Redemption) -> Redemption:
        return await self._insert(redemption)

    @_translate_errors
    async def get_redemption(self, redemption_id: str) -> Optional[Redemption]:
        return await self._find_by_id(Redemption, redemption_id)

    @_translate_errors
    async def update_redemption(self, redemption: Redemption) -> Redemption:
        return await self._replace(redemption)

    @_translate_errors
    async def list_redemptions(
        self,
        brand_id: str,
        user_id: Optional[str],
        limit: int,
        offset: int,
    ) -> Tuple[Iterable[Redemption], int]:
        query: Dict[str, Any] = {"brand_id": brand_id}
        if user_id is not None:
            query["user_id"] = user_id
        col = self._db[Redemption.collection_name]
        cursor = (
            col.find(query, session=_session.get())
            .sort("created_at", DESCENDING)
            .skip(offset)
            .limit(limit)
        )
        # Sequential: a session must not be used by two operations at once.
        docs = await cursor.to_list(length=limit)
        total = await col.count_documents(query, session=_session.get())
        return self._decode_all(Redemption, docs), total

    # Fraud flags
    @_translate_errors
    async def add_fraud_flag(self, flag: FraudFlag) -> FraudFlag:
        return await self._insert(flag)

    @_translate_errors
    async def get_fraud_flag(self, flag_id: str) -> Optional[FraudFlag]:
        return await self._find_by_id(FraudFlag, flag_id)

    @_translate_errors
    async def update_fraud_flag(self, flag: FraudFlag) -> FraudFlag:
        return await self._replace(flag)

    @_translate_errors
    async def list_fraud_flags(
        self,
        brand_id: Optional[str],
        status: Optional[FraudStatus],
        limit: int,
        offset: int,
    ) -> Iterable[FraudFlag]:
        query: Dict[str, Any] = {}
        if brand_id is not None:
            query["brand_id"] = brand_id
        if status is not None:
            query["status"] = status.value
        col = self._db[FraudFlag.collection_name]
        cursor = col.find(query, session=_session.get()).sort("created_at", DESCENDING).skip(offset).limit(limit)
        docs = await cursor.to_list(length=limit)
        return self._decode_all(FraudFlag, docs)

    # Audit
    @_translate_errors
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        # Audit lines are written outside any open transaction.
        col = self._db[AuditEvent.collection_name]
        await col.insert_one(self._prepare_insert(event))
        return event
