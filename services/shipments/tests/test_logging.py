import contextvars
import json
import logging

from shared.core.logging_config import (
    LoggerAdapter,
    SecurityFilter,
    StructuredFormatter,
    actor_id_var,
    correlation_id_var,
    mask_sensitive_fields,
    request_id_var,
    set_request_context,
)


def _clear_context():
    for var in (request_id_var, correlation_id_var, actor_id_var):
        var.set(None)


def _record(msg="hello", **attrs):
    record = logging.LogRecord("shipments.test", logging.INFO, __file__, 10, msg, None, None)
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


def test_mask_walks_nested_payloads():
    payload = {
        "recipient_phone": "+919876543210",
        "Authorization": "Bearer abc",
        "weight_kg": 2,
        "parcels": [{"owner_email": "a@b.c", "awb": "AWB1"}],
        "carrier": {"api_token": "t", "name": "dhl"},
    }

    masked = mask_sensitive_fields(payload)

    assert masked == {
        "recipient_phone": "***",
        "Authorization": "***",
        "weight_kg": 2,
        "parcels": [{"owner_email": "***", "awb": "AWB1"}],
        "carrier": {"api_token": "***", "name": "dhl"},
    }
    assert payload["recipient_phone"] == "+919876543210"


def test_mask_leaves_scalars_alone():
    assert mask_sensitive_fields("password") == "password"
    assert mask_sensitive_fields(None) is None


def test_formatter_emits_json_with_masked_custom_fields():
    record = _record(extra_fields={"shipment_id": "s1", "password": "hunter2"}, duration_ms=12.5)

    line = json.loads(StructuredFormatter().format(record))

    assert line["level"] == "INFO"
    assert line["message"] == "hello"
    assert line["custom"] == {"shipment_id": "s1", "password": "***"}
    assert line["performance"] == {"duration_ms": 12.5}
    assert line["location"]["line"] == 10


def test_formatter_includes_trace_context():
    def run():
        _clear_context()
        set_request_context(request_id="req-1", actor_id="customer-1")
        return json.loads(StructuredFormatter().format(_record()))

    line = contextvars.copy_context().run(run)

    assert line["trace"] == {"request_id": "req-1", "actor_id": "customer-1"}


def test_security_filter_redacts_message_secrets():
    record = _record("login password=hunter2 token: abc123, awb=AWB1")

    assert SecurityFilter().filter(record) is True
    assert record.msg == "login password=*** token: ***, awb=AWB1"


def test_adapter_injects_request_context():
    def run():
        _clear_context()
        set_request_context(request_id="req-9", correlation_id="corr-9")
        adapter = LoggerAdapter(logging.getLogger("shipments.test"), {})
        return adapter.process("msg", {"extra": {"extra_fields": {"a": 1}}})

    _, kwargs = contextvars.copy_context().run(run)

    assert kwargs["extra"] == {"extra_fields": {"a": 1}, "request_id": "req-9", "correlation_id": "corr-9"}


def test_request_id_is_echoed(client):
    resp = client.get("/", headers={"X-Request-ID": "req-echo"})
    assert resp.headers["X-Request-ID"] == "req-echo"
    assert client.get("/").headers["X-Request-ID"]
