from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import Settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .db.mongo import MongoDBManager
from .logging.audit_logger import AuditLogger
from .services.api_keys import ApiKeyService
from .services.balance import BalanceCalculator
from .services.fraud_gate import FraudGate
from .services.identity import ExternalUserResolver, IdentityProvider, build_identity_provider
from .services.integration_service import IntegrationService
from .services.ledger_store import LedgerStore
from .services.redemption_service import RedemptionService
from .services.rewards_engine import RewardsEngine

logger = logging.getLogger(__name__)


@dataclass
class LoyaltyServices:
    settings: Settings
    db: BaseDBManager
    audit: AuditLogger
    ledger_store: LedgerStore
    balance: BalanceCalculator
    fraud_gate: FraudGate
    engine: RewardsEngine
    redemptions: RedemptionService
    resolver: ExternalUserResolver
    integration: IntegrationService
    api_keys: ApiKeyService
    identity_provider: IdentityProvider


def create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.mongo_uri:
        if not settings.mongo_transactions:
            raise ValueError(
                "the MongoDB backend requires LOYALTY_MONGO_TRANSACTIONS; "
                "redemptions cannot be made atomic without it"
            )
        return MongoDBManager.from_client_uri(
            settings.mongo_uri,
            settings.mongo_db,
            use_transactions=settings.mongo_transactions,
            lock_timeout=settings.lock_timeout_seconds,
            lock_lease=settings.lock_lease_seconds,
        )
    logger.warning("LOYALTY_MONGO_URI not set; using the in-memory store")
    return InMemoryDBManager(lock_timeout=settings.lock_timeout_seconds)


def build_services(settings: Settings, db: Optional[BaseDBManager] = None) -> LoyaltyServices:
    db = db or create_db_manager(settings)
    audit = AuditLogger(db=db, file_path=settings.audit_log_path)
    ledger_store = LedgerStore(
        db, page_max=settings.ledger_page_max, amount_bounds=settings.amount_bounds()
    )
    balance = BalanceCalculator(db, strict=settings.strict_balance_invariant)
    fraud_gate = FraudGate(db, ledger_store, audit, config=settings.fraud_config())
    engine = RewardsEngine(
        db,
        ledger_store,
        balance,
        fraud_gate,
        audit,
        max_metadata_bytes=settings.max_metadata_bytes,
    )
    redemptions = RedemptionService(db, engine, ledger_store, balance, audit)
    resolver = ExternalUserResolver(db)
    return LoyaltyServices(
        settings=settings,
        db=db,
        audit=audit,
        ledger_store=ledger_store,
        balance=balance,
        fraud_gate=fraud_gate,
        engine=engine,
        redemptions=redemptions,
        resolver=resolver,
        integration=IntegrationService(engine, redemptions, resolver),
        api_keys=ApiKeyService(db, audit),
        identity_provider=build_identity_provider(
            settings.identity_mode, settings.environment, db, settings.dev_user_id
        ),
    )
