from __future__ import annotations

from typing import Any, Callable, Optional

import pytest

from loyalty_ledger.config import Settings
from loyalty_ledger.container import LoyaltyServices, build_services
from loyalty_ledger.db.base import BaseDBManager
from loyalty_ledger.db.memory import InMemoryDBManager


@pytest.fixture
def make_services(tmp_path) -> Callable[..., LoyaltyServices]:
    def _make(db: Optional[BaseDBManager] = None, **overrides: Any) -> LoyaltyServices:
        options: dict[str, Any] = {
            "environment": "development",
            "identity_mode": "static",
            "audit_log_path": tmp_path / "audit.log",
        }
        options.update(overrides)
        return build_services(Settings(**options), db=db or InMemoryDBManager())

    return _make


@pytest.fixture
def services(make_services) -> LoyaltyServices:
    return make_services()
