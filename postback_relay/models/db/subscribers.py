from __future__ import annotations
"""SQLAlchemy model for notification subscribers (chat users).

Approval / banning is handled by the bot front end; this service only reads
approved rows when fanning out deposit notifications.
"""
from sqlalchemy import BigInteger, String, DateTime, Enum
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from postback_relay.database import Base
from .enums import SubscriberStatus, SubscriberRole

class Subscriber(Base):
    __tablename__ = "subscribers"
    # Chat user id doubles as primary key
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[SubscriberStatus] = mapped_column(Enum(SubscriberStatus), default=SubscriberStatus.PENDING, index=True)
    role: Mapped[SubscriberRole] = mapped_column(Enum(SubscriberRole), default=SubscriberRole.USER, index=True)
    approved_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
