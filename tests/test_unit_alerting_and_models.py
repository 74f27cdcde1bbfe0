import asyncio
from decimal import Decimal
import pytest
from pydantic import ValidationError
from postback_relay.models.db.enums import SubscriberStatus
from postback_relay.models.schemas.postback import PostbackEvent
from postback_relay.services.alerting import OperatorNotifier, format_audit_summary, trend_line
from postback_relay.services.subscribers import SubscriberRoster
from conftest import FakeTransport, TestingSessionLocal
from test_unit_audit_scheduler import make_report


def test_postback_event_aliases_and_normalisation():
    event = PostbackEvent.model_validate(
        {"subid": " abc12345xyz ", "status": "sale", "payout": "12.50", "geo": "br", "from": "", "click_ref": "x"}
    )
    assert event.identifier == "abc12345xyz"
    assert event.payout_amount == Decimal("12.50")
    assert event.geo_code == "BR"
    assert event.source_token is None
    assert event.extra_fields == {"click_ref": "x"}

    canonical = PostbackEvent.model_validate({"identifier": "id1", "status": "dep", "payoutAmount": 3, "sourceToken": "pwa.partners"})
    assert canonical.source_token == "pwa.partners"


def test_postback_event_rejects_bad_input():
    with pytest.raises(ValidationError):
        PostbackEvent.model_validate({"status": "sale"})
    with pytest.raises(ValidationError):
        PostbackEvent.model_validate({"subid": "a", "status": "sale", "payout": "-1"})


def test_operator_notifier_counts_failures():
    transport = FakeTransport(failing={2})
    notifier = OperatorNotifier(transport, owner_ids=[1, 2, 3])
    assert asyncio.run(notifier.notify_operators("hello")) == {"sent": 2, "failed": 1}


def test_audit_summary_lists_missing_and_recommendations():
    report = make_report(0.6, missing=4)
    text = format_audit_summary(report, title="Daily deposit audit", period_label="2025-03-09")
    assert "Missing: 4" in text
    assert "60.0%" in text
    assert "... and 1 more" in text

    clean = format_audit_summary(make_report(1.0), title="Daily deposit audit", period_label="2025-03-09")
    assert "All deposits notified" in clean


def test_trend_direction():
    assert trend_line([]) is None
    assert "improving" in trend_line([0.80, 0.80, 0.80, 0.95, 0.95, 0.95])
    assert "declining" in trend_line([0.99, 0.99, 0.99, 0.90, 0.90, 0.90])
    assert "stable" in trend_line([0.97, 0.97, 0.97, 0.97])


def test_roster_lists_only_approved(subscriber_factory):
    subscriber_factory(30)
    subscriber_factory(10)
    subscriber_factory(20, status=SubscriberStatus.PENDING)
    subscriber_factory(40, status=SubscriberStatus.BANNED)
    assert SubscriberRoster(TestingSessionLocal).list_active_subscribers() == [10, 30]
