"""Deposit notification formatting and subscriber fan-out.

One fan-out sends the same HTML message to every approved subscriber in turn
(paced for chat API flood limits) and appends a single delivery-log row.
Normal deliveries record an 8-char ``subIdPrefix`` of the buyer sub id; every
delivery records the full ``identifier``; fallback deliveries are flagged.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from html import escape
from typing import Any, Awaitable, Callable, Protocol

from postback_relay.config import AUDIT_SETTINGS, KEITARO_REPORT_TIMEZONE, TELEGRAM_SEND_DELAY_SECONDS
from postback_relay.exceptions import DeliveryError, TransportError
from postback_relay.services.alerting import MessageTransport
from postback_relay.services.delivery_log import DeliveryLogEntry
from postback_relay.utils import get_logger
from postback_relay.utils.time import format_local, utc_now

logger = get_logger(__name__)

FALLBACK_PLACEHOLDER = "Unknown (fallback)"


class Roster(Protocol):
    def list_active_subscribers(self) -> list[int]: ...


class LogAppender(Protocol):
    def append(self, entry: DeliveryLogEntry) -> DeliveryLogEntry: ...


@dataclass
class DeliveryPayload:
    identifier: str
    channel_id: int | None
    source_name: str | None
    buyer_id: str | None = None
    geo: str | None = None
    offer_name: str | None = None
    campaign_name: str | None = None
    sub_id_2: str | None = None
    creative: str | None = None
    payout: Decimal | float | None = None
    fallback: bool = False
    occurred_at: datetime | None = None


@dataclass
class DeliveryReport:
    recipient_count: int
    success_count: int
    failed_count: int
    fallback: bool
    log_id: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "recipients": self.recipient_count,
            "success": self.success_count,
            "failed": self.failed_count,
            "fallback": self.fallback,
            "log_id": self.log_id,
        }


def format_payout(value: Decimal | float | None) -> str:
    if value is None:
        return "N/A"
    return f"${float(value):.2f}"


class DeliveryDispatcher:
    def __init__(
        self,
        transport: MessageTransport,
        roster: Roster,
        log_store: LogAppender,
        *,
        kind: str | None = None,
        prefix_length: int | None = None,
        send_delay_seconds: float | None = None,
        report_timezone: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.roster = roster
        self.log_store = log_store
        self.kind = kind or str(AUDIT_SETTINGS["notification_kind"])
        self.prefix_length = int(prefix_length or AUDIT_SETTINGS["prefix_length"])
        self.send_delay_seconds = float(TELEGRAM_SEND_DELAY_SECONDS if send_delay_seconds is None else send_delay_seconds)
        self.report_timezone = report_timezone or KEITARO_REPORT_TIMEZONE
        self._sleep = sleep

    def format_message(self, payload: DeliveryPayload) -> str:
        def detail(value: str | None) -> str:
            if payload.fallback and not value:
                return FALLBACK_PLACEHOLDER
            return escape(value or "N/A")

        lines = ["🥳 <b>New deposit!</b>"]
        if payload.fallback:
            lines.append("⚠️ <i>Fallback attribution: tracker data not available yet</i>")
        lines += [
            "",
            "Source: FB",
            f"Buyer ID: {escape(payload.buyer_id or 'N/A')}",
            f"GEO: {escape(payload.geo or 'N/A')}",
            f"Tracker source: {escape(payload.source_name or 'N/A')}",
            f"Offer: {detail(payload.offer_name)}",
            f"Campaign: {detail(payload.campaign_name)}",
            f"Subid2: {detail(payload.sub_id_2)}",
            f"Creative: {detail(payload.creative)}",
            f"Payout: {format_payout(payload.payout)}",
            "",
            f"<i>🕒 {format_local(payload.occurred_at or utc_now(), self.report_timezone)}</i>",
        ]
        return "\n".join(lines)

    def build_metadata(self, payload: DeliveryPayload) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "identifier": payload.identifier,
            "fallback": payload.fallback,
            "channel_id": payload.channel_id,
            "channel_name": payload.source_name,
            "payout": float(payload.payout) if payload.payout is not None else None,
            "geo": payload.geo,
        }
        if not payload.fallback:
            meta["subIdPrefix"] = (payload.buyer_id or payload.identifier)[: self.prefix_length]
        return meta

    async def dispatch(self, payload: DeliveryPayload) -> DeliveryReport:
        try:
            recipients = await asyncio.to_thread(self.roster.list_active_subscribers)
        except Exception as e:
            logger.error("Subscriber roster unavailable", identifier=payload.identifier, error=str(e), exc_info=True)
            raise DeliveryError(f"Subscriber roster unavailable: {e}") from e
        if not recipients:
            logger.warning("No active subscribers; deposit notification dropped", identifier=payload.identifier)
            raise DeliveryError("No active subscribers")

        message = self.format_message(payload)
        success = 0
        failed = 0
        for index, chat_id in enumerate(recipients):
            try:
                await self.transport.send(chat_id, message)
                success += 1
            except TransportError as e:
                failed += 1
                logger.warning("Subscriber send failed", chat_id=chat_id, identifier=payload.identifier, error=str(e))
            if index < len(recipients) - 1 and self.send_delay_seconds > 0:
                await self._sleep(self.send_delay_seconds)

        entry = DeliveryLogEntry(
            kind=self.kind,
            recipient_count=len(recipients),
            success_count=success,
            failed_count=failed,
            message_body=message,
            metadata=self.build_metadata(payload),
        )
        try:
            stored = await asyncio.to_thread(self.log_store.append, entry)
        except Exception as e:
            logger.error("Delivery log append failed", identifier=payload.identifier, error=str(e), exc_info=True)
            raise DeliveryError(
                f"Delivery log append failed: {e}",
                recipient_count=len(recipients),
                success_count=success,
                failed_count=failed,
            ) from e

        logger.info(
            "Deposit notification fan-out finished",
            identifier=payload.identifier,
            recipients=len(recipients),
            success=success,
            failed=failed,
            fallback=payload.fallback,
        )
        if success == 0:
            raise DeliveryError(
                "All subscriber sends failed",
                recipient_count=len(recipients),
                success_count=0,
                failed_count=failed,
            )
        return DeliveryReport(
            recipient_count=len(recipients),
            success_count=success,
            failed_count=failed,
            fallback=payload.fallback,
            log_id=stored.id,
        )


__all__ = ["DeliveryDispatcher", "DeliveryPayload", "DeliveryReport", "format_payout", "FALLBACK_PLACEHOLDER"]
