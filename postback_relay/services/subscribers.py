"""Subscriber roster (read side only; approval lives in the bot front end)."""
from __future__ import annotations

from typing import Callable

from sqlalchemy.orm import Session

from postback_relay.database import SessionLocal
from postback_relay.models.db.enums import SubscriberStatus
from postback_relay.models.db.subscribers import Subscriber


class SubscriberRoster:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def list_active_subscribers(self) -> list[int]:
        session = self._session_factory()
        try:
            rows = (
                session.query(Subscriber.id)
                .filter(Subscriber.status == SubscriberStatus.APPROVED)
                .order_by(Subscriber.id)
                .all()
            )
            return [r[0] for r in rows]
        finally:
            session.close()


__all__ = ["SubscriberRoster"]
