"""Operator alerting: internal error reports and audit summaries.

Messages are HTML (chat parse mode) and sent to every configured owner id
through the chat transport. Individual send failures are logged and counted;
alerting never raises into the caller.
"""
from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Iterable, Protocol, Sequence

from postback_relay.config import AUDIT_SETTINGS, OWNER_IDS
from postback_relay.exceptions import TransportError
from postback_relay.models.schemas.audit import AuditReport
from postback_relay.utils import get_logger
from postback_relay.utils.metrics import mean
from postback_relay.utils.time import format_local, utc_now

logger = get_logger(__name__)

CAUSE_LABELS = {
    "non_target": "non-target channel",
    "no_fallback_mapping": "no fallback mapping configured",
    "too_recent": "too recent, may still be in flight",
    "no_postback_received": "no postback received",
}


class MessageTransport(Protocol):
    async def send(self, chat_id: int, text: str) -> None: ...


class OperatorNotifier:
    def __init__(self, transport: MessageTransport, owner_ids: Iterable[int] | None = None):
        self.transport = transport
        self.owner_ids = list(owner_ids if owner_ids is not None else OWNER_IDS)

    async def notify_operators(self, message: str) -> dict[str, int]:
        sent = 0
        failed = 0
        if not self.owner_ids:
            logger.warning("No operator ids configured; alert dropped", length=len(message))
        for owner_id in self.owner_ids:
            try:
                await self.transport.send(owner_id, message)
                sent += 1
            except TransportError as e:
                failed += 1
                logger.warning("Failed to notify operator", owner_id=owner_id, error=str(e))
        return {"sent": sent, "failed": failed}


def _stamp(now: datetime | None = None) -> str:
    return format_local(now or utc_now(), str(AUDIT_SETTINGS["timezone"]))


def _pct(rate: float) -> str:
    return f"{rate * 100:.1f}%"


def format_internal_error(*, identifier: str | None, request_id: str | None, error: BaseException) -> str:
    return (
        "❌ <b>Postback processing error</b>\n\n"
        f"Identifier: <code>{escape(identifier or 'N/A')}</code>\n"
        f"Request: <code>{escape(request_id or 'N/A')}</code>\n"
        f"Error: {escape(type(error).__name__)}: {escape(str(error))}\n"
        f"\n<i>{_stamp()}</i>"
    )


def format_delivery_failure(*, identifier: str, error: BaseException) -> str:
    return (
        "⚠️ <b>Deposit notification not delivered</b>\n\n"
        f"Identifier: <code>{escape(identifier)}</code>\n"
        f"Error: {escape(str(error))}\n"
        f"\n<i>{_stamp()}</i>"
    )


def format_audit_summary(report: AuditReport, *, title: str, period_label: str) -> str:
    lines = [
        f"📊 <b>{escape(title)}</b>",
        "",
        f"Period: {escape(period_label)}",
        f"Target-channel deposits: {report.target_channel_count}",
        f"Notifications sent: {report.sent_count}",
    ]
    missing = report.missing
    if missing:
        lines.append(f"⚠️ <b>Missing: {report.missing_count}</b>")
        lines.append(f"Success rate: {_pct(report.success_rate)}")
        lines.append("")
        lines.append("<b>Missing deposits:</b>")
        for i, finding in enumerate(missing[:3], start=1):
            cause = CAUSE_LABELS.get(finding.probable_cause.value if finding.probable_cause else "", "unknown")
            lines.append(f"{i}. {escape(finding.identifier)} - {cause}")
        if len(missing) > 3:
            lines.append(f"... and {len(missing) - 3} more")
        if report.recommendations:
            lines.append("")
            lines.append("<b>Recommendations:</b>")
            for i, rec in enumerate(report.recommendations[:2], start=1):
                lines.append(f"{i}. {escape(rec.message)}")
    else:
        lines.append("✅ <b>All deposits notified</b>")
        lines.append(f"Success rate: {_pct(report.success_rate)}")
    lines.append("")
    lines.append(f"<i>{_stamp()}</i>")
    return "\n".join(lines)


def trend_line(daily_rates: Sequence[float]) -> str | None:
    """Average and direction over the most recent daily success rates (fractions)."""
    if not daily_rates:
        return None
    avg = mean(daily_rates) or 0.0
    delta = 0.0
    if len(daily_rates) > 3:
        delta = (sum(daily_rates[-3:]) / 3) - (sum(daily_rates[:3]) / 3)
    if delta > 0.02:
        direction = f"improving (+{delta * 100:.1f} pts)"
    elif delta < -0.02:
        direction = f"declining ({delta * 100:.1f} pts)"
    else:
        direction = "stable"
    return f"Average daily success rate: {_pct(avg)}, {direction}"


def format_weekly_report(report: AuditReport, *, period_label: str, daily_rates: Sequence[float]) -> str:
    lines = [
        "📈 <b>Weekly deposit report</b>",
        "",
        f"Period: {escape(period_label)}",
        f"Target-channel deposits: {report.target_channel_count}",
        f"Delivery log entries: {report.delivery_log_count}",
        f"Notified: {report.sent_count}",
        f"Missing: {report.missing_count}",
        f"Success rate: {_pct(report.success_rate)}",
    ]
    trend = trend_line(daily_rates)
    if trend:
        lines.append("")
        lines.append(f"<b>Trend:</b> {trend}")
    lines.append("")
    lines.append(f"<i>{_stamp()}</i>")
    return "\n".join(lines)


def format_emergency_alert(report: AuditReport, *, period_label: str) -> str:
    lines = [
        "🚨 <b>Missing deposits detected</b>",
        "",
        f"Date: {escape(period_label)}",
        f"Missing: {report.missing_count}",
        "",
        "<b>Check:</b>",
    ]
    for i, finding in enumerate(report.missing[:5], start=1):
        lines.append(f"{i}. {escape(finding.identifier)} (${finding.source_record.revenue:.2f})")
    lines.append("")
    lines.append("Re-run: POST /api/v1/audit/run")
    lines.append(f"<i>{_stamp()}</i>")
    return "\n".join(lines)


def format_audit_failure(audit_type: str, error: BaseException) -> str:
    return (
        f"❌ <b>{escape(audit_type.capitalize())} audit failed</b>\n\n"
        f"Error: {escape(str(error))}\n"
        f"Time: {_stamp()}"
    )


__all__ = [
    "OperatorNotifier",
    "MessageTransport",
    "format_internal_error",
    "format_delivery_failure",
    "format_audit_summary",
    "format_weekly_report",
    "format_emergency_alert",
    "format_audit_failure",
    "trend_line",
]
