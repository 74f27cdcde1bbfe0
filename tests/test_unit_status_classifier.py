import pytest
from postback_relay.config import STATUS_KEYWORDS
from postback_relay.models.db.enums import StatusDecision
from postback_relay.services.status_classifier import classify_status


@pytest.mark.parametrize("status", ["sale", "dep_confirmed", "DEPOSIT", "first_dep", "approved", " paid "])
def test_deposit_statuses_accepted(status):
    result = classify_status(status)
    assert result.accepted
    assert result.reason == "deposit_keyword"


@pytest.mark.parametrize("status", ["rejected", "chargeback", "Refund", "failed_deposit", "sale_cancelled"])
def test_rejection_takes_precedence(status):
    result = classify_status(status)
    assert result.decision == StatusDecision.REJECT
    assert result.reason == "rejection_keyword"


@pytest.mark.parametrize("status", ["lead", "registration", "signup", "install_approved", "click"])
def test_lead_statuses_ignored(status):
    result = classify_status(status)
    assert result.decision == StatusDecision.IGNORE
    assert result.reason == "lead_keyword"


def test_lead_override_only_by_narrow_keywords():
    # "dep" lifts the lead exclusion, "approved" does not
    assert classify_status("reg_dep").accepted
    assert classify_status("lead_sale").accepted
    assert not classify_status("lead_approved").accepted


def test_empty_and_unknown_statuses_ignored():
    assert classify_status("").reason == "empty_status"
    assert classify_status("   ").reason == "empty_status"
    assert classify_status(None).reason == "empty_status"
    unknown = classify_status("pending")
    assert unknown.decision == StatusDecision.IGNORE
    assert unknown.reason == "no_indicator"


def test_legacy_exact_match_uses_original_spelling():
    keywords = {**STATUS_KEYWORDS, "deposit": [], "legacy_exact": ["Sale"]}
    assert classify_status("Sale", keywords=keywords).reason == "legacy"
    assert not classify_status("sale", keywords=keywords).accepted
