"""Reconciliation engine (deposit audit).

``audit_period(date_from, date_to)``:
1. Fetches deposit conversions for the period from the tracking platform.
2. Keeps target-channel conversions only.
3. Loads successful delivery-log rows of the audited kind for the same period,
   taken as whole days in the tracker report timezone.
4. Builds two match sets from log metadata: full identifiers and 8-char
   ``subIdPrefix`` values (normal deliveries log only the buyer prefix).
5. A conversion is matched by exact identifier or by its first 8 characters.
6. Each unmatched conversion gets a probable cause, in priority order:
   non-target channel, no fallback mapping for the channel, too recent,
   otherwise no postback received.
7. Emits an ``AuditReport`` with a cause histogram and recommendations
   (none when nothing is missing).

Read-only with respect to every collaborator. Collaborator failures surface as
``ReconciliationError``; no partial report is produced.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional, Protocol

from postback_relay.config import AUDIT_SETTINGS, KEITARO_REPORT_TIMEZONE
from postback_relay.exceptions import AttributionLookupError, ReconciliationError
from postback_relay.models.db.enums import MatchStatus, ProbableCause
from postback_relay.models.schemas.attribution import ConversionRecord
from postback_relay.models.schemas.audit import AuditFinding, AuditReport, IdentifierAuditResult, Recommendation
from postback_relay.services.channel_classifier import ChannelClassifier
from postback_relay.services.delivery_log import DeliveryLogEntry
from postback_relay.services.fallback_resolver import FallbackResolver
from postback_relay.utils import get_logger, log_business_event, log_performance
from postback_relay.utils.metrics import success_rate
from postback_relay.utils.time import day_bounds, ensure_aware, utc_now

logger = get_logger(__name__)


class ConversionSource(Protocol):
    async def lookup(self, identifier: str) -> Optional[ConversionRecord]: ...

    async def list_for_period(self, date_from: date, date_to: date) -> list[ConversionRecord]: ...


class DeliveryLogReader(Protocol):
    def query_by_period_and_kind(
        self, start: datetime, end: datetime, kind: str, *, successful_only: bool = True
    ) -> list[DeliveryLogEntry]: ...


@dataclass(frozen=True)
class MatchSets:
    identifiers: frozenset[str]
    prefixes: frozenset[str]


# (kind, priority, message template, action) per cause
RECOMMENDATION_RULES: dict[ProbableCause, tuple[str, str, str, str]] = {
    ProbableCause.NO_POSTBACK_RECEIVED: (
        "webhook_health",
        "high",
        "{count} deposits likely missing postbacks - check payment gateway integration",
        "Check payment gateway webhook configuration and delivery logs",
    ),
    ProbableCause.NO_FALLBACK_MAPPING: (
        "fallback_mapping",
        "medium",
        "{count} deposits from channels without a fallback source mapping",
        "Review FALLBACK_SOURCES and add mappings for the affected channels",
    ),
    ProbableCause.TOO_RECENT: (
        "in_flight",
        "low",
        "{count} very recent deposits - may still be processing",
        "Re-run the audit in 10 minutes",
    ),
    ProbableCause.NON_TARGET: (
        "channel_config",
        "low",
        "{count} deposits on channels outside the target set",
        "Review TRAFFIC_CHANNELS target and ignored ids",
    ),
}


def build_match_sets(entries: Iterable[DeliveryLogEntry], prefix_length: int) -> MatchSets:
    identifiers: set[str] = set()
    prefixes: set[str] = set()
    for entry in entries:
        meta = entry.metadata or {}
        identifier = meta.get("identifier")
        if identifier:
            identifiers.add(str(identifier))
        prefix = meta.get("subIdPrefix")
        if prefix:
            prefixes.add(str(prefix)[:prefix_length])
    return MatchSets(frozenset(identifiers), frozenset(prefixes))


def is_matched(identifier: str, sets: MatchSets, prefix_length: int) -> bool:
    return identifier in sets.identifiers or identifier[:prefix_length] in sets.prefixes


class ReconciliationEngine:
    def __init__(
        self,
        attribution: ConversionSource,
        log_store: DeliveryLogReader,
        channels: ChannelClassifier,
        fallback: FallbackResolver,
        *,
        kind: str | None = None,
        prefix_length: int | None = None,
        freshness_window_minutes: float | None = None,
        report_timezone: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.attribution = attribution
        self.log_store = log_store
        self.channels = channels
        self.fallback = fallback
        self.kind = kind or str(AUDIT_SETTINGS["notification_kind"])
        self.prefix_length = int(prefix_length or AUDIT_SETTINGS["prefix_length"])
        self.freshness_window = timedelta(
            minutes=float(
                AUDIT_SETTINGS["freshness_window_minutes"] if freshness_window_minutes is None else freshness_window_minutes
            )
        )
        # Tracker days are whole days in its report timezone; log windows follow it
        self.report_timezone = report_timezone or KEITARO_REPORT_TIMEZONE
        self._clock = clock

    # ------------------------------------------------------------------ #
    def classify_cause(self, record: ConversionRecord, now: datetime) -> ProbableCause:
        if not self.channels.is_target_channel(record.channel_id):
            return ProbableCause.NON_TARGET
        if not self.fallback.has_mapping_for_channel(record.channel_id):
            return ProbableCause.NO_FALLBACK_MAPPING
        if record.event_timestamp is not None and now - ensure_aware(record.event_timestamp) < self.freshness_window:
            return ProbableCause.TOO_RECENT
        return ProbableCause.NO_POSTBACK_RECEIVED

    def build_recommendations(self, histogram: Counter) -> list[Recommendation]:
        recommendations: list[Recommendation] = []
        # Rule order doubles as priority order
        for cause, (kind, priority, template, action) in RECOMMENDATION_RULES.items():
            count = histogram.get(cause.value, 0)
            if count <= 0:
                continue
            recommendations.append(
                Recommendation(
                    kind=kind,
                    priority=priority,
                    cause=cause,
                    count=count,
                    message=template.format(count=count),
                    action=action,
                )
            )
        return recommendations

    def compare(
        self, records: Iterable[ConversionRecord], entries: list[DeliveryLogEntry], now: datetime
    ) -> list[AuditFinding]:
        sets = build_match_sets(entries, self.prefix_length)
        findings: list[AuditFinding] = []
        for record in records:
            if not record.identifier:
                logger.warning("Conversion without identifier skipped", channel_id=record.channel_id, status=record.status)
                continue
            if is_matched(record.identifier, sets, self.prefix_length):
                findings.append(AuditFinding(identifier=record.identifier, match_status=MatchStatus.SENT, source_record=record))
                continue
            findings.append(
                AuditFinding(
                    identifier=record.identifier,
                    match_status=MatchStatus.MISSING,
                    probable_cause=self.classify_cause(record, now),
                    source_record=record,
                )
            )
        return findings

    async def _load_logs(self, start: datetime, end: datetime) -> list[DeliveryLogEntry]:
        return await asyncio.to_thread(
            self.log_store.query_by_period_and_kind, start, end, self.kind, successful_only=True
        )

    async def audit_period(self, date_from: date, date_to: date) -> AuditReport:
        if date_to < date_from:
            raise ReconciliationError(f"Invalid audit period {date_from} > {date_to}")
        started = time.perf_counter()
        audit_id = f"audit_{uuid.uuid4().hex[:12]}"
        logger.info("Starting deposit audit", audit_id=audit_id, date_from=str(date_from), date_to=str(date_to))

        try:
            conversions = await self.attribution.list_for_period(date_from, date_to)
        except AttributionLookupError as e:
            logger.error("Audit failed fetching conversions", audit_id=audit_id, error=str(e))
            raise ReconciliationError(f"Tracking platform error: {e}") from e

        target = [c for c in conversions if self.channels.is_target_channel(c.channel_id)]
        start, end = day_bounds(date_from, date_to, self.report_timezone)
        try:
            entries = await self._load_logs(start, end)
        except Exception as e:
            logger.error("Audit failed reading delivery logs", audit_id=audit_id, error=str(e), exc_info=True)
            raise ReconciliationError(f"Delivery log storage error: {e}") from e

        now = self._clock()
        findings = self.compare(target, entries, now)
        missing = [f for f in findings if f.match_status == MatchStatus.MISSING]
        sent = len(findings) - len(missing)
        histogram = Counter(f.probable_cause.value for f in missing if f.probable_cause is not None)
        audited = len(findings)

        report = AuditReport(
            audit_id=audit_id,
            period={"from": date_from.isoformat(), "to": date_to.isoformat()},
            generated_at=now,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            total_conversions=len(conversions),
            target_channel_count=audited,
            sent_count=sent,
            missing_count=len(missing),
            success_rate=success_rate(audited, len(missing)),
            delivery_log_count=len(entries),
            matched_identifiers_count=sent,
            cause_histogram=dict(histogram),
            findings=findings,
            recommendations=self.build_recommendations(histogram) if missing else [],
        )
        logger.info(
            "Deposit audit completed",
            audit_id=audit_id,
            total_conversions=report.total_conversions,
            target_channel=report.target_channel_count,
            sent=report.sent_count,
            missing=report.missing_count,
            success_rate=round(report.success_rate, 4),
        )
        log_business_event(
            "audit_completed",
            {"audit_id": audit_id, "missing": report.missing_count, "success_rate": report.success_rate},
        )
        log_performance("audit_period", report.duration_ms, {"conversions": len(conversions)})
        return report

    async def audit_identifier(self, identifier: str) -> IdentifierAuditResult:
        """Audit a single identifier: is it in the tracker, and was it notified."""
        try:
            record = await self.attribution.lookup(identifier)
        except AttributionLookupError as e:
            raise ReconciliationError(f"Tracking platform error: {e}") from e
        if record is None:
            return IdentifierAuditResult(identifier=identifier, status="not_found_in_tracker")

        now = self._clock()
        start = ensure_aware(record.event_timestamp) - timedelta(days=1) if record.event_timestamp else now - timedelta(days=30)
        try:
            entries = await self._load_logs(start, now)
        except Exception as e:
            raise ReconciliationError(f"Delivery log storage error: {e}") from e

        match: DeliveryLogEntry | None = None
        for entry in entries:
            if is_matched(identifier, build_match_sets([entry], self.prefix_length), self.prefix_length):
                match = entry
                break
        return IdentifierAuditResult(
            identifier=identifier,
            status="notification_sent" if match else "notification_missing",
            is_target_channel=self.channels.is_target_channel(record.channel_id),
            conversion=record,
            delivery_log=match.as_dict() if match else None,
        )


__all__ = [
    "ReconciliationEngine",
    "MatchSets",
    "build_match_sets",
    "is_matched",
    "RECOMMENDATION_RULES",
]
