import json
import logging
from postback_relay.utils.logger import (
    ContextFormatter,
    JSONFormatter,
    bind_request_id,
    current_request_id,
    get_logger,
    reset_request_id,
)


def make_record(extra_data=None):
    record = logging.LogRecord("postback_relay.test", logging.INFO, __file__, 10, "Postback ignored", None, None)
    if extra_data is not None:
        record.extra_data = extra_data
    return record


def test_bound_request_id_stamped_on_records():
    token = bind_request_id("req-42")
    try:
        assert current_request_id() == "req-42"
        doc = json.loads(JSONFormatter().format(make_record({"identifier": "abc"})))
        assert doc["request_id"] == "req-42"
        assert doc["identifier"] == "abc"
        assert doc["message"] == "Postback ignored"
    finally:
        reset_request_id(token)
    assert current_request_id() is None


def test_explicit_request_id_wins():
    token = bind_request_id("req-bound")
    try:
        doc = json.loads(JSONFormatter().format(make_record({"request_id": "req-explicit"})))
    finally:
        reset_request_id(token)
    assert doc["request_id"] == "req-explicit"


def test_console_formatter_appends_context():
    line = ContextFormatter("%(message)s").format(make_record({"reason": "duplicate"}))
    assert line == "Postback ignored | reason=duplicate"
    assert ContextFormatter("%(message)s").format(make_record()) == "Postback ignored"


def test_get_logger_namespacing():
    assert get_logger("scheduler").logger.name == "postback_relay.scheduler"
    assert get_logger("postback_relay.services.dedup_cache").logger.name == "postback_relay.services.dedup_cache"


def test_request_id_reused_only_when_well_formed():
    from postback_relay.utils.observability import REQUEST_ID_HEADER, ensure_request_id
    assert ensure_request_id({REQUEST_ID_HEADER: "gw-77:retry.2"}) == "gw-77:retry.2"
    generated = ensure_request_id({REQUEST_ID_HEADER: "bad id\nwith newline"})
    assert generated.startswith("req_") and len(generated) == 20
    assert ensure_request_id({}).startswith("req_")
    assert ensure_request_id({REQUEST_ID_HEADER: "x" * 200}).startswith("req_")
