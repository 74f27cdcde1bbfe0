from datetime import timedelta
from fastapi.testclient import TestClient
from postback_relay import config
from postback_relay.main import app
from postback_relay.services.delivery_log import DeliveryLogEntry
from conftest import NOW, make_record


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def test_admin_api_disabled_without_token(client, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_TOKEN", None)
    r = client.get("/api/v1/audit/scheduler", headers=auth("anything"))
    assert r.status_code == 503


def test_admin_api_rejects_wrong_token(client, admin_token):
    assert client.get("/api/v1/audit/scheduler").status_code == 401
    r = client.get("/api/v1/audit/scheduler", headers=auth("wrong"))
    assert r.status_code == 401
    assert r.json()["success"] is False


def test_service_unavailable_before_startup(admin_token):
    if hasattr(app.state, "services"):
        del app.state.services
    r = TestClient(app).get("/api/v1/audit/scheduler", headers=auth(admin_token))
    assert r.status_code == 503


def test_scheduler_stats(client, admin_token):
    r = client.get("/api/v1/audit/scheduler", headers=auth(admin_token))
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["running"] is False
    assert data["history_size"] == 0


def test_manual_audit_run(client, admin_token, services, fake_attribution):
    today = NOW.date()
    fake_attribution.period_records = [make_record("aud00001xx"), make_record("aud00002xx")]
    services.delivery_logs.append(
        DeliveryLogEntry(
            kind="deposit",
            recipient_count=1,
            success_count=1,
            failed_count=0,
            message_body="x",
            metadata={"identifier": "aud00001xx"},
            created_at=NOW - timedelta(hours=1),
        )
    )
    r = client.post(
        "/api/v1/audit/run",
        json={"date_from": today.isoformat(), "date_to": today.isoformat()},
        headers=auth(admin_token),
    )
    assert r.status_code == 200
    report = r.json()["data"]
    assert report["sent_count"] == 1
    assert report["missing_count"] == 1
    assert report["findings"][1]["probable_cause"] == "no_postback_received"
    assert services.scheduler.history[-1].audit_type == "manual"


def test_manual_audit_invalid_range(client, admin_token):
    r = client.post(
        "/api/v1/audit/run",
        json={"date_from": "2025-03-10", "date_to": "2025-03-01"},
        headers=auth(admin_token),
    )
    assert r.status_code == 400


def test_manual_audit_upstream_failure(client, admin_token, fake_attribution):
    from postback_relay.exceptions import AttributionLookupError
    fake_attribution.period_error = AttributionLookupError("down", reason="retries_exhausted")
    r = client.post(
        "/api/v1/audit/run",
        json={"date_from": "2025-03-09", "date_to": "2025-03-09"},
        headers=auth(admin_token),
    )
    assert r.status_code == 502


def test_conversion_lookup(client, admin_token, fake_attribution):
    fake_attribution.responses["look0001xx"] = [make_record("look0001xx")]
    r = client.get("/api/v1/audit/conversions/look0001xx", headers=auth(admin_token))
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "notification_missing"
    r = client.get("/api/v1/audit/conversions/unknown", headers=auth(admin_token))
    assert r.json()["data"]["status"] == "not_found_in_tracker"


def test_configuration_views(client, admin_token):
    channels = client.get("/api/v1/audit/channels", headers=auth(admin_token)).json()
    assert channels["data"]["validation"]["valid"] is True
    assert 9 in channels["data"]["channels"]["target_ids"]

    fallback = client.get("/api/v1/audit/fallback", headers=auth(admin_token)).json()["data"]
    assert set(fallback["fallback_sources"]) == {"bettitltr", "pwa.partners"}
    assert fallback["dedup_cache"]["ttl_seconds"] == 86400


def test_subscriber_summary(client, admin_token, subscriber_factory):
    from postback_relay.models.db.enums import SubscriberStatus
    subscriber_factory(1)
    subscriber_factory(2)
    subscriber_factory(3, status=SubscriberStatus.BANNED)
    data = client.get("/api/v1/audit/subscribers", headers=auth(admin_token)).json()["data"]
    assert data["by_status"]["approved"] == 2
    assert data["by_status"]["banned"] == 1
    assert data["total"] == 3


def test_traffic_sources_listing(client, admin_token):
    r = client.get("/api/v1/audit/traffic-sources", headers=auth(admin_token))
    assert r.status_code == 200
    sources = {s["id"]: s for s in r.json()["data"]["sources"]}
    assert sources[9]["is_target"] is True
    assert sources[9]["has_fallback"] is True
    assert sources[2]["is_target"] is False
    assert sources[12]["is_target"] is True
    assert sources[12]["has_fallback"] is False


def test_traffic_sources_upstream_failure(client, admin_token, fake_attribution):
    from postback_relay.exceptions import AttributionLookupError
    fake_attribution.period_error = AttributionLookupError("down", reason="circuit_open")
    r = client.get("/api/v1/audit/traffic-sources", headers=auth(admin_token))
    assert r.status_code == 502
    assert r.json()["success"] is False
