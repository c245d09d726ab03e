import httpx
import pytest
from sqlalchemy import select

from app.core_settings import Settings
from app.domain.errors import CarrierError
from app.domain.models import ApiCallLog
from app.infrastructure import db as database
from app.infrastructure.carrier import FakeCarrier, HttpCarrierClient, build_carrier


def _settings(**overrides):
    values = dict(
        CARRIER_ADAPTER="http",
        CARRIER_BASE_URL="https://carrier.test/api/",
        CARRIER_EMAIL="ops@example.com",
        CARRIER_PASSWORD="hunter2",
        CARRIER_TOKEN=None,
        CARRIER_MAX_RETRIES=3,
        CARRIER_RETRY_BACKOFF_SECONDS=1.0,
    )
    values.update(overrides)
    return Settings(**values)


class CarrierApi:
    """Scripted carrier: each path pops its next response."""

    def __init__(self, **scripts):
        self.scripts = {path: list(responses) for path, responses in scripts.items()}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.rsplit("/", 1)[-1]
        status, body = self.scripts[path].pop(0)
        if isinstance(body, Exception):
            raise body
        return httpx.Response(status, json=body)

    def paths(self):
        return [r.url.path.rsplit("/", 1)[-1] for r in self.requests]


def _client(api, **overrides):
    sleeps = []
    client = HttpCarrierClient(
        _settings(**overrides),
        transport=httpx.MockTransport(api),
        session_factory=database.SessionLocal,
        sleep=sleeps.append,
    )
    return client, sleeps


def _logs():
    with database.SessionLocal() as session:
        return list(session.scalars(select(ApiCallLog).order_by(ApiCallLog.id)))


def test_login_once_and_reuse_token():
    api = CarrierApi(
        auth=[(200, {"token": "tok-1"})],
        create=[(200, {"awb": "AWB1"})],
        track=[(200, {"status": "Picked Up", "location": "Pune"})],
    )
    client, _ = _client(api)

    assert client.create_shipment({"shipment_id": "s1", "recipient_phone": "+919876543210"}) == "AWB1"
    tracking = client.track("AWB1", shipment_id="s1")

    assert tracking.raw_status == "Picked Up"
    assert tracking.location == "Pune"
    assert api.paths() == ["auth", "create", "track"]
    assert api.requests[1].headers["Authorization"] == "Bearer tok-1"
    assert api.requests[2].url.params["awb"] == "AWB1"


def test_static_token_skips_login():
    api = CarrierApi(track=[(200, {"status": "In Transit"})])
    client, _ = _client(api, CARRIER_TOKEN="static")

    assert client.track("AWB1").raw_status == "In Transit"
    assert api.paths() == ["track"]
    assert api.requests[0].headers["Authorization"] == "Bearer static"


def test_expired_token_triggers_a_new_login():
    api = CarrierApi(
        auth=[(200, {"token": "old"}), (200, {"token": "new"})],
        track=[(401, {"error": "expired"}), (200, {"status": "Delivered"})],
    )
    client, sleeps = _client(api)

    assert client.track("AWB1").raw_status == "Delivered"
    assert api.paths() == ["auth", "track", "auth", "track"]
    assert api.requests[-1].headers["Authorization"] == "Bearer new"
    assert sleeps == []


def test_server_errors_are_retried_with_backoff():
    api = CarrierApi(
        auth=[(200, {"token": "tok"})],
        track=[(503, {}), (502, {}), (200, {"status": "Picked Up"})],
    )
    client, sleeps = _client(api)

    assert client.track("AWB1").raw_status == "Picked Up"
    assert sleeps == [1.0, 3.0]


def test_gives_up_after_max_retries():
    api = CarrierApi(
        auth=[(200, {"token": "tok"})],
        track=[(500, {})] * 4,
    )
    client, sleeps = _client(api)

    with pytest.raises(CarrierError) as exc:
        client.track("AWB1")
    assert exc.value.code == "UPSTREAM_FAILURE"
    assert exc.value.upstream_status == 500
    assert sleeps == [1.0, 3.0, 9.0]


def test_transport_errors_are_retried():
    api = CarrierApi(
        auth=[(200, {"token": "tok"})],
        track=[(0, httpx.ConnectError("refused")), (200, {"status": "Picked Up"})],
    )
    client, sleeps = _client(api)

    assert client.track("AWB1").raw_status == "Picked Up"
    assert sleeps == [1.0]


def test_client_errors_are_not_retried():
    api = CarrierApi(auth=[(200, {"token": "tok"})], create=[(422, {"error": "bad pincode"})])
    client, sleeps = _client(api)

    with pytest.raises(CarrierError) as exc:
        client.create_shipment({"shipment_id": "s1"})
    assert exc.value.upstream_status == 422
    assert sleeps == []


def test_failed_login_is_an_upstream_failure():
    api = CarrierApi(auth=[(403, {"error": "locked"})])
    client, _ = _client(api)

    with pytest.raises(CarrierError):
        client.track("AWB1")


def test_every_call_is_logged_with_sensitive_fields_masked():
    api = CarrierApi(
        auth=[(200, {"token": "tok-secret"})],
        create=[(200, {"awb": "AWB9"})],
    )
    client, _ = _client(api)
    client.create_shipment({"shipment_id": "s9", "recipient_phone": "+919876543210", "weight_kg": 2})

    auth_log, create_log = _logs()
    assert auth_log.api_type == "carrier_auth"
    assert auth_log.request_payload["password"] == "***"
    assert auth_log.request_payload["email"] == "***"
    assert auth_log.response_payload["token"] == "***"

    assert create_log.api_type == "carrier_create"
    assert create_log.shipment_id == "s9"
    assert create_log.http_status == 200
    assert create_log.request_payload["recipient_phone"] == "***"
    assert create_log.request_payload["weight_kg"] == 2
    assert create_log.response_payload == {"awb": "AWB9"}
    assert create_log.execution_time_ms >= 0


def test_adapter_is_chosen_by_settings():
    assert isinstance(build_carrier(_settings(CARRIER_ADAPTER="fake")), FakeCarrier)
    assert isinstance(build_carrier(_settings()), HttpCarrierClient)
    with pytest.raises(ValueError):
        build_carrier(_settings(CARRIER_ADAPTER="pigeon"))
