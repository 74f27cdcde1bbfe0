from conftest import FakeRoster, make_record


def test_get_postback_fallback_delivery(client, fake_transport):
    r = client.get("/postback", params={"subid": "abc12345xyz", "status": "sale", "payout": "25", "from": "bettitltr"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["outcome"] == "FALLBACK_DELIVERED"
    assert body["identifier"] == "abc12345xyz"
    assert body["data"]["broadcast"]["recipients"] == 3
    assert body["data"]["broadcast"]["fallback"] is True
    assert len(fake_transport.sent) == 3


def test_post_json_postback_delivered(client, fake_attribution):
    fake_attribution.responses["abc12345xyz"] = [make_record()]
    r = client.post(
        "/api/v1/postback",
        json={"subid": "abc12345xyz", "status": "dep_confirmed", "payout": 25.0, "geo": "BR"},
        headers={"X-Request-ID": "req-abc"},
    )
    assert r.status_code == 200
    assert r.headers["X-Request-ID"] == "req-abc"
    body = r.json()
    assert body["outcome"] == "DELIVERED"
    assert body["request_id"] == "req-abc"
    assert body["data"]["broadcast"]["success"] == 3


def test_post_form_merges_query_parameters(client, fake_attribution):
    fake_attribution.responses["form0001xx"] = [make_record("form0001xx")]
    r = client.post("/postback?status=sale", data={"subid": "form0001xx"})
    assert r.status_code == 200
    assert r.json()["outcome"] == "DELIVERED"


def test_duplicate_postback_acknowledged(client):
    params = {"subid": "dup00001xx", "status": "sale", "from": "pwa.partners"}
    assert client.get("/postback", params=params).json()["outcome"] == "FALLBACK_DELIVERED"
    second = client.get("/postback", params=params)
    assert second.status_code == 200
    assert second.json()["outcome"] == "IGNORED"
    assert second.json()["reason"] == "duplicate"


def test_ignored_status_is_success(client, fake_transport):
    r = client.get("/postback", params={"subid": "abc", "status": "rejected"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["outcome"] == "IGNORED"
    assert body["reason"] == "status_rejected"
    assert fake_transport.sent == []


def test_missing_fields_rejected_with_400(client):
    r = client.get("/postback", params={"subid": "abc"})
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["reason"] == "validation_error"
    assert body["data"]["errors"][0]["field"] == "status"


def test_malformed_json_rejected_with_400(client):
    r = client.post("/postback", content="{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json()["success"] is False
    assert r.json()["details"][0]["type"] == "json_invalid"


def test_delivery_failure_reported_without_retry_status(client, services):
    services.dispatcher.roster = FakeRoster(ids=[])
    r = client.get("/postback", params={"subid": "abc12345xyz", "status": "sale", "from": "bettitltr"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is False
    assert body["outcome"] == "FAILED"
    assert body["reason"] == "delivery_error"


def test_health_endpoints(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"

    detailed = client.get("/health/detailed").json()
    assert detailed["checks"]["database"] == "healthy"
    assert detailed["checks"]["keitaro"]["healthy"] is True
    assert detailed["checks"]["scheduler_running"] is False
