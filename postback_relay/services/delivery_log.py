"""Delivery log storage (append + period query).

Synchronous SQLAlchemy; async callers go through ``asyncio.to_thread``. Rows are
returned as detached ``DeliveryLogEntry`` values so callers never touch a
closed session.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from postback_relay.database import SessionLocal
from postback_relay.models.db.delivery_logs import DeliveryLog
from postback_relay.models.db.enums import NotificationKind
from postback_relay.utils import get_logger
from postback_relay.utils.time import ensure_aware, utc_now

logger = get_logger(__name__)


@dataclass
class DeliveryLogEntry:
    kind: str
    recipient_count: int
    success_count: int
    failed_count: int
    message_body: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: DeliveryLog) -> "DeliveryLogEntry":
        kind = row.kind.value if isinstance(row.kind, NotificationKind) else str(row.kind)
        return cls(
            id=row.id,
            kind=kind,
            recipient_count=row.recipient_count,
            success_count=row.success_count,
            failed_count=row.failed_count,
            message_body=row.message_body,
            metadata=dict(row.metadata_json or {}),
            created_at=ensure_aware(row.created_at) if row.created_at else None,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "recipient_count": self.recipient_count,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class DeliveryLogStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def append(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        session = self._session_factory()
        try:
            row = DeliveryLog(
                kind=NotificationKind(entry.kind),
                recipient_count=entry.recipient_count,
                success_count=entry.success_count,
                failed_count=entry.failed_count,
                message_body=entry.message_body,
                metadata_json=entry.metadata,
                created_at=entry.created_at or utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            stored = DeliveryLogEntry.from_row(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        logger.debug("Delivery log appended", log_id=stored.id, kind=stored.kind, success_count=stored.success_count)
        return stored

    def query_by_period_and_kind(
        self,
        start: datetime,
        end: datetime,
        kind: str,
        *,
        successful_only: bool = True,
    ) -> list[DeliveryLogEntry]:
        session = self._session_factory()
        try:
            query = session.query(DeliveryLog).filter(
                DeliveryLog.kind == NotificationKind(kind),
                DeliveryLog.created_at >= start,
                DeliveryLog.created_at <= end,
            )
            if successful_only:
                query = query.filter(DeliveryLog.success_count > 0)
            rows = query.order_by(DeliveryLog.created_at.desc()).all()
            return [DeliveryLogEntry.from_row(r) for r in rows]
        finally:
            session.close()

    def ping(self) -> bool:
        session = self._session_factory()
        try:
            session.query(DeliveryLog.id).limit(1).all()
            return True
        finally:
            session.close()


__all__ = ["DeliveryLogEntry", "DeliveryLogStore"]
