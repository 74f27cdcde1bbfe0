from __future__ import annotations
"""SQLAlchemy model for delivery logs (one row per notification fan-out).

Append-only. The reconciliation engine reads rows back by period and kind and
matches conversions against ``metadata_json``: fallback deliveries store the
full ``identifier``, normal deliveries store an 8-char ``subIdPrefix``.
"""
from sqlalchemy import Integer, Text, DateTime, Enum, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from postback_relay.database import Base
from .enums import NotificationKind

class DeliveryLog(Base):
    __tablename__ = "delivery_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    kind: Mapped[NotificationKind] = mapped_column(Enum(NotificationKind), nullable=False, index=True)
    recipient_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    message_body: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
