import asyncio
from datetime import date
import pytest
from postback_relay.exceptions import ReconciliationError
from postback_relay.jobs.audit_scheduler import AuditScheduler
from postback_relay.models.db.enums import MatchStatus, ProbableCause
from postback_relay.models.schemas.audit import AuditFinding, AuditReport
from postback_relay.services.alerting import OperatorNotifier
from conftest import NOW, FakeClock, FakeTransport, make_record


def make_report(success_rate: float = 1.0, missing: int = 0) -> AuditReport:
    findings = [
        AuditFinding(
            identifier=f"miss{i:04d}xx",
            match_status=MatchStatus.MISSING,
            probable_cause=ProbableCause.NO_POSTBACK_RECEIVED,
            source_record=make_record(f"miss{i:04d}xx"),
        )
        for i in range(missing)
    ]
    return AuditReport(
        audit_id="audit_test",
        period={"from": "2025-03-09", "to": "2025-03-09"},
        generated_at=NOW,
        total_conversions=10,
        target_channel_count=10,
        sent_count=10 - missing,
        missing_count=missing,
        success_rate=success_rate,
        findings=findings,
    )


class FakeEngine:
    def __init__(self, results=None):
        self.results = list(results or [make_report()])
        self.calls: list[tuple[date, date]] = []

    async def audit_period(self, date_from, date_to):
        self.calls.append((date_from, date_to))
        item = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(item, Exception):
            raise item
        return item


def make_scheduler(engine):
    transport = FakeTransport()
    scheduler = AuditScheduler(engine, OperatorNotifier(transport, owner_ids=[900]), clock=FakeClock())
    return scheduler, transport


def test_daily_audit_covers_yesterday_and_notifies():
    engine = FakeEngine([make_report(0.8, missing=2)])
    scheduler, transport = make_scheduler(engine)
    report = asyncio.run(scheduler.run_daily_audit())

    assert report is not None
    assert engine.calls == [(date(2025, 3, 9), date(2025, 3, 9))]
    assert len(scheduler.history) == 1
    assert scheduler.history[0].audit_type == "daily"
    assert scheduler.last_audit_time == NOW
    text = transport.sent[0][1]
    assert "Daily deposit audit" in text
    assert "miss0000xx" in text


def test_weekly_audit_period_and_trend():
    engine = FakeEngine([make_report(0.9), make_report(0.9), make_report(0.99)])
    scheduler, transport = make_scheduler(engine)
    asyncio.run(scheduler.run_daily_audit())
    asyncio.run(scheduler.run_daily_audit())
    asyncio.run(scheduler.run_weekly_audit())

    assert engine.calls[-1] == (date(2025, 3, 3), date(2025, 3, 9))
    weekly = transport.sent[-1][1]
    assert "Weekly deposit report" in weekly
    assert "Average daily success rate: 90.0%" in weekly


def test_emergency_check_gated_on_two_bad_days():
    engine = FakeEngine([make_report(0.9, missing=1), make_report(0.99), make_report(0.9, missing=1)])
    scheduler, transport = make_scheduler(engine)

    assert asyncio.run(scheduler.run_emergency_check()) is None
    assert engine.calls == []

    asyncio.run(scheduler.run_daily_audit())  # 0.90
    asyncio.run(scheduler.run_daily_audit())  # 0.99
    assert not scheduler.should_run_emergency()

    asyncio.run(scheduler.run_daily_audit())  # last two are 0.99 and 0.90
    assert not scheduler.should_run_emergency()


def test_emergency_check_alerts_when_armed():
    engine = FakeEngine([make_report(0.9, missing=1)])
    scheduler, transport = make_scheduler(engine)
    asyncio.run(scheduler.run_daily_audit())
    asyncio.run(scheduler.run_daily_audit())
    assert scheduler.should_run_emergency()

    report = asyncio.run(scheduler.run_emergency_check())
    assert report is not None
    assert engine.calls[-1] == (NOW.date(), NOW.date())
    assert "Missing deposits detected" in transport.sent[-1][1]
    assert scheduler.history[-1].audit_type == "emergency"


def test_failed_audit_notifies_and_keeps_history_clean():
    engine = FakeEngine([ReconciliationError("Tracking platform error: down")])
    scheduler, transport = make_scheduler(engine)
    assert asyncio.run(scheduler.run_daily_audit()) is None
    assert len(scheduler.history) == 0
    assert "Daily audit failed" in transport.sent[0][1]


def test_manual_audit_propagates_errors():
    scheduler, _ = make_scheduler(FakeEngine([ReconciliationError("boom")]))
    with pytest.raises(ReconciliationError):
        asyncio.run(scheduler.run_manual_audit(date(2025, 3, 1), date(2025, 3, 2)))

    scheduler, _ = make_scheduler(FakeEngine([make_report()]))
    asyncio.run(scheduler.run_manual_audit(date(2025, 3, 1), date(2025, 3, 2)))
    assert scheduler.history[-1].audit_type == "manual"


def test_history_is_bounded():
    engine = FakeEngine([make_report()])
    transport = FakeTransport()
    settings = {
        "timezone": "UTC",
        "history_size": 3,
        "daily_hour": 9,
        "weekly_day_of_week": "sun",
        "weekly_hour": 10,
        "emergency_every_hours": 4,
        "emergency_success_rate_threshold": 0.95,
    }
    scheduler = AuditScheduler(engine, OperatorNotifier(transport, owner_ids=[]), settings=settings, clock=FakeClock())
    for _ in range(5):
        asyncio.run(scheduler.run_daily_audit())
    assert len(scheduler.history) == 3
    assert scheduler.get_stats()["history_size"] == 3


def test_start_registers_cron_jobs():
    async def scenario():
        scheduler, _ = make_scheduler(FakeEngine())
        scheduler.start()
        try:
            stats = scheduler.get_stats()
        finally:
            scheduler.stop()
        return stats, scheduler.is_running

    stats, running_after_stop = asyncio.run(scenario())
    assert stats["running"] is True
    assert {job["id"] for job in stats["jobs"]} == {"daily_audit", "weekly_audit", "emergency_check"}
    assert running_after_stop is False
