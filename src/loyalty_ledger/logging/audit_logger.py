from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.audit import AuditEvent, AuditEventType


logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit logger that writes to a file and the database.

    Both sinks are best-effort: a failed audit write is logged and never
    propagated to the operation being audited.

    File logging is append-only, line-delimited JSON for easier ingestion
    by log aggregators. DB logging uses the `AuditEvent` model and the
    configured `BaseDBManager`.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = file_path
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self,
        message: str,
        details: dict[str, Any],
        brand_id: Optional[str] = None,
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            AuditEventType.TRANSACTION,
            brand_id=brand_id,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        brand_id: Optional[str] = None,
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            AuditEventType.ERROR,
            brand_id=brand_id,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_system(self, message: str, details: dict[str, Any]) -> None:
        await self._log(
            AuditEventType.SYSTEM,
            brand_id=None,
            user_id=None,
            message=message,
            details=details,
            correlation_id=None,
        )

    async def _log(
        self,
        event_type: AuditEventType,
        brand_id: Optional[str],
        user_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        event = AuditEvent(
            event_type=event_type,
            brand_id=brand_id,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        # The audited operation has already been written.
        try:
            await self._db.add_audit_event(event)
        except Exception:
            logger.exception(
                "Could not persist audit event: %s",
                message,
                extra={"brand_id": brand_id, "user_id": user_id, "event_type": event_type.value},
            )

        try:
            line = json.dumps(event.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning("Could not write audit file %s: %s", self._file_path, exc)
