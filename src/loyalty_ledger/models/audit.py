from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class AuditEventType(str, Enum):
    TRANSACTION = "transaction"
    ERROR = "error"
    SYSTEM = "system"


class AuditEvent(DBSerializableModel):
    """
    Structured audit line persisted to DB and mirrored to the JSONL audit file.
    """

    collection_name: ClassVar[str] = "ledger_audit_log"

    id: Optional[str] = Field(default=None)
    event_type: AuditEventType
    brand_id: Optional[str] = None
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
