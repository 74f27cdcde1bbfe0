"""Audit scheduler.

APScheduler cron jobs that run the reconciliation engine and forward the
report to operators:

* daily   - yesterday, every day at ``daily_hour``
* weekly  - the 7 days ending yesterday, on ``weekly_day_of_week`` at ``weekly_hour``
* emergency - today, every ``emergency_every_hours`` hours, only while the last
  two daily audits were below the success-rate threshold; alerts only when
  something is missing

Every completed run lands in a bounded in-memory history.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Deque, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from postback_relay.config import AUDIT_SETTINGS
from postback_relay.exceptions import ReconciliationError
from postback_relay.models.schemas.audit import AuditReport
from postback_relay.services.alerting import (
    OperatorNotifier,
    format_audit_failure,
    format_audit_summary,
    format_emergency_alert,
    format_weekly_report,
)
from postback_relay.services.reconciliation_engine import ReconciliationEngine
from postback_relay.utils import get_logger
from postback_relay.utils.time import utc_now

logger = get_logger("scheduler")


@dataclass
class AuditHistoryEntry:
    audit_type: str
    audit_id: str
    date_from: date
    date_to: date
    success_rate: float
    missing_count: int
    target_channel_count: int
    completed_at: datetime

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.audit_type,
            "audit_id": self.audit_id,
            "period": {"from": self.date_from.isoformat(), "to": self.date_to.isoformat()},
            "success_rate": self.success_rate,
            "missing_count": self.missing_count,
            "target_channel_count": self.target_channel_count,
            "completed_at": self.completed_at.isoformat(),
        }


def _period_label(date_from: date, date_to: date) -> str:
    if date_from == date_to:
        return date_from.isoformat()
    return f"{date_from.isoformat()} - {date_to.isoformat()}"


class AuditScheduler:
    def __init__(
        self,
        engine: ReconciliationEngine,
        notifier: OperatorNotifier,
        *,
        settings: dict | None = None,
        scheduler: AsyncIOScheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.engine = engine
        self.notifier = notifier
        self.settings = settings if settings is not None else AUDIT_SETTINGS
        self.timezone = ZoneInfo(str(self.settings["timezone"]))
        self.scheduler = scheduler or AsyncIOScheduler(timezone=self.timezone)
        self._clock = clock
        self.history: Deque[AuditHistoryEntry] = deque(maxlen=int(self.settings["history_size"]))
        self.last_audit_time: Optional[datetime] = None

    # ----------------------------- lifecycle ----------------------------- #
    @property
    def is_running(self) -> bool:
        return bool(self.scheduler.running)

    def start(self) -> None:
        if self.is_running:
            logger.warning("Audit scheduler already running")
            return
        self.scheduler.add_job(
            self.run_daily_audit,
            "cron",
            hour=int(self.settings["daily_hour"]),
            minute=0,
            id="daily_audit",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_weekly_audit,
            "cron",
            day_of_week=str(self.settings["weekly_day_of_week"]),
            hour=int(self.settings["weekly_hour"]),
            minute=0,
            id="weekly_audit",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_emergency_check,
            "cron",
            hour=f"*/{int(self.settings['emergency_every_hours'])}",
            minute=0,
            id="emergency_check",
            replace_existing=True,
            misfire_grace_time=600,
        )
        self.scheduler.start()
        logger.info(
            "Audit scheduler started",
            daily_hour=self.settings["daily_hour"],
            weekly=f"{self.settings['weekly_day_of_week']} {self.settings['weekly_hour']}:00",
            emergency_every_hours=self.settings["emergency_every_hours"],
            timezone=str(self.timezone),
        )

    def stop(self) -> None:
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            logger.info("Audit scheduler stopped")

    # ------------------------------ helpers ------------------------------ #
    def _today(self) -> date:
        return self._clock().astimezone(self.timezone).date()

    def _record(self, audit_type: str, report: AuditReport, date_from: date, date_to: date) -> None:
        self.history.append(
            AuditHistoryEntry(
                audit_type=audit_type,
                audit_id=report.audit_id,
                date_from=date_from,
                date_to=date_to,
                success_rate=report.success_rate,
                missing_count=report.missing_count,
                target_channel_count=report.target_channel_count,
                completed_at=self._clock(),
            )
        )
        self.last_audit_time = self._clock()

    def daily_rates(self, limit: int = 7) -> list[float]:
        return [h.success_rate for h in self.history if h.audit_type == "daily"][-limit:]

    def should_run_emergency(self) -> bool:
        threshold = float(self.settings["emergency_success_rate_threshold"])
        recent = [h for h in self.history if h.audit_type == "daily"][-2:]
        return len(recent) == 2 and all(h.success_rate < threshold for h in recent)

    async def _run(self, audit_type: str, date_from: date, date_to: date) -> Optional[AuditReport]:
        try:
            report = await self.engine.audit_period(date_from, date_to)
        except ReconciliationError as e:
            logger.error("Scheduled audit failed", audit_type=audit_type, error=str(e))
            await self.notifier.notify_operators(format_audit_failure(audit_type, e))
            return None
        except Exception as e:
            logger.error("Scheduled audit crashed", audit_type=audit_type, error=str(e), exc_info=True)
            await self.notifier.notify_operators(format_audit_failure(audit_type, e))
            return None
        self._record(audit_type, report, date_from, date_to)
        return report

    # -------------------------------- jobs -------------------------------- #
    async def run_daily_audit(self) -> Optional[AuditReport]:
        day = self._today() - timedelta(days=1)
        logger.info("Starting daily audit", date=day.isoformat())
        report = await self._run("daily", day, day)
        if report is not None:
            await self.notifier.notify_operators(
                format_audit_summary(report, title="Daily deposit audit", period_label=_period_label(day, day))
            )
            logger.info("Daily audit completed", date=day.isoformat(), missing=report.missing_count, success_rate=report.success_rate)
        return report

    async def run_weekly_audit(self) -> Optional[AuditReport]:
        date_to = self._today() - timedelta(days=1)
        date_from = self._today() - timedelta(days=7)
        logger.info("Starting weekly audit", date_from=date_from.isoformat(), date_to=date_to.isoformat())
        report = await self._run("weekly", date_from, date_to)
        if report is not None:
            await self.notifier.notify_operators(
                format_weekly_report(
                    report,
                    period_label=_period_label(date_from, date_to),
                    daily_rates=self.daily_rates(),
                )
            )
        return report

    async def run_emergency_check(self) -> Optional[AuditReport]:
        if not self.should_run_emergency():
            logger.debug("Emergency check skipped; no recent issues detected")
            return None
        today = self._today()
        logger.info("Starting emergency check", date=today.isoformat())
        report = await self._run("emergency", today, today)
        if report is not None and report.missing_count > 0:
            await self.notifier.notify_operators(format_emergency_alert(report, period_label=today.isoformat()))
        return report

    async def run_manual_audit(self, date_from: date, date_to: date) -> AuditReport:
        """Operator-triggered audit. Errors propagate to the caller."""
        logger.info("Starting manual audit", date_from=date_from.isoformat(), date_to=date_to.isoformat())
        report = await self.engine.audit_period(date_from, date_to)
        self._record("manual", report, date_from, date_to)
        return report

    def get_stats(self, history_limit: int = 10) -> dict[str, Any]:
        jobs = []
        if self.is_running:
            for job in self.scheduler.get_jobs():
                jobs.append(
                    {
                        "id": job.id,
                        "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                        "trigger": str(job.trigger),
                    }
                )
        return {
            "running": self.is_running,
            "last_audit_time": self.last_audit_time.isoformat() if self.last_audit_time else None,
            "history_size": len(self.history),
            "recent_history": [h.as_dict() for h in list(self.history)[-history_limit:]],
            "emergency_armed": self.should_run_emergency(),
            "jobs": jobs,
            "timezone": str(self.timezone),
        }


__all__ = ["AuditScheduler", "AuditHistoryEntry"]
