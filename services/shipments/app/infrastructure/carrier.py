"""Domestic carrier integration.

The booking service and the carrier sync worker program against
``CarrierPort``; the adapter is chosen by ``CARRIER_ADAPTER``.
"""

import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

import httpx
from cachetools import TTLCache

from app.core_settings import Settings, get_settings
from app.domain.errors import CarrierError
from app.domain.models import ApiCallLog
from shared.core import get_logger, mask_sensitive_fields

logger = get_logger(__name__)

TOKEN_TTL_SECONDS = 55 * 60


@dataclass
class CarrierTracking:
    awb: str
    raw_status: Optional[str]
    location: Optional[str] = None
    timestamp: Optional[str] = None


class CarrierPort(ABC):
    """Interface every carrier adapter implements."""

    @abstractmethod
    def create_shipment(self, payload: Dict[str, Any]) -> str:
        """Register the domestic leg with the carrier and return its AWB."""
        ...

    @abstractmethod
    def track(self, awb: str, shipment_id: Optional[str] = None) -> CarrierTracking:
        """Current raw carrier status for ``awb``."""
        ...


class HttpCarrierClient(CarrierPort):
    """httpx client for the carrier REST API.

    Tokens come from ``CARRIER_TOKEN`` or a ``POST /auth`` login and are
    cached for 55 minutes. A 401 drops the cached token and logs in again.
    Transport errors and 5xx answers are retried with exponential backoff.
    Every request is recorded in ``api_logs`` with sensitive fields masked.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.BaseTransport] = None,
        session_factory: Optional[Callable] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not settings.CARRIER_BASE_URL:
            raise ValueError("CARRIER_BASE_URL must be set for the http carrier adapter")
        self.settings = settings
        self.base_url = settings.CARRIER_BASE_URL.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=settings.CARRIER_TIMEOUT_SECONDS,
            transport=transport,
        )
        self._tokens: TTLCache = TTLCache(maxsize=1, ttl=TOKEN_TTL_SECONDS)
        self._token_lock = threading.Lock()
        self._session_factory = session_factory
        self._sleep = sleep

    def close(self):
        self._client.close()

    # -- auth --------------------------------------------------------------

    def authenticate(self) -> str:
        if self.settings.CARRIER_TOKEN:
            self._tokens["token"] = self.settings.CARRIER_TOKEN
            return self.settings.CARRIER_TOKEN

        if not self.settings.CARRIER_EMAIL or not self.settings.CARRIER_PASSWORD:
            raise CarrierError("Carrier credentials are not configured")

        body = {"email": self.settings.CARRIER_EMAIL, "password": self.settings.CARRIER_PASSWORD}
        correlation_id = str(uuid.uuid4())
        start = time.monotonic()
        status = 0
        response_body: Dict[str, Any] = {}
        try:
            response = self._client.post("/auth", json=body)
            status = response.status_code
            response_body = _json_body(response)
            if response.is_error:
                raise CarrierError(f"Carrier auth failed: {status}", http_status=status)
            token = response_body.get("token")
            if not token:
                raise CarrierError("Carrier auth response missing token", http_status=status)
        except httpx.HTTPError as e:
            raise CarrierError(f"Carrier auth unreachable: {e}") from e
        finally:
            self._record("carrier_auth", None, {"url": "/auth", **body}, response_body, status, start, correlation_id)

        self._tokens["token"] = token
        return token

    def _token(self) -> str:
        with self._token_lock:
            token = self._tokens.get("token")
            if token is None:
                token = self.authenticate()
            return token

    def _drop_token(self):
        with self._token_lock:
            self._tokens.pop("token", None)

    # -- operations --------------------------------------------------------

    def create_shipment(self, payload: Dict[str, Any]) -> str:
        body = self._call("carrier_create", "POST", "/create", payload.get("shipment_id"), json=payload)
        awb = body.get("awb")
        if not awb:
            raise CarrierError("Carrier create response missing awb")
        return awb

    def track(self, awb: str, shipment_id: Optional[str] = None) -> CarrierTracking:
        body = self._call("carrier_track", "GET", "/track", shipment_id, params={"awb": awb})
        return CarrierTracking(
            awb=awb,
            raw_status=body.get("status"),
            location=body.get("location"),
            timestamp=body.get("timestamp"),
        )

    def _call(self, api_type: str, method: str, path: str, shipment_id: Optional[str], **kwargs) -> Dict[str, Any]:
        correlation_id = str(uuid.uuid4())
        request_payload = {"url": path, **(kwargs.get("json") or {}), **(kwargs.get("params") or {})}
        attempts = self.settings.CARRIER_MAX_RETRIES + 1
        last_error: Optional[CarrierError] = None

        for attempt in range(attempts):
            token = self._token()
            start = time.monotonic()
            status = 0
            response_body: Dict[str, Any] = {}
            try:
                response = self._client.request(
                    method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
                )
                status = response.status_code
                response_body = _json_body(response)
            except httpx.HTTPError as e:
                last_error = CarrierError(f"Carrier {api_type} unreachable: {e}")
            finally:
                self._record(api_type, shipment_id, request_payload, response_body, status, start, correlation_id)

            if status == 401:
                # stale token; log in again and retry straight away
                last_error = CarrierError("Carrier token expired or invalid", http_status=401)
                self._drop_token()
                continue
            if status and status < 400:
                return response_body
            if status and status < 500:
                raise CarrierError(f"Carrier {api_type} failed: {status}", http_status=status)
            if status:
                last_error = CarrierError(f"Carrier {api_type} failed: {status}", http_status=status)

            if attempt < attempts - 1:
                delay = self.settings.CARRIER_RETRY_BACKOFF_SECONDS * (3 ** attempt)
                logger.warning(
                    f"Carrier {api_type} attempt {attempt + 1} failed, retrying in {delay}s",
                    extra={"extra_fields": {"correlation_id": correlation_id, "http_status": status}},
                )
                self._sleep(delay)

        raise last_error or CarrierError(f"Carrier {api_type} failed")

    def _record(self, api_type, shipment_id, request_payload, response_payload, status, start, correlation_id):
        elapsed_ms = int((time.monotonic() - start) * 1000)
        if self._session_factory is None:
            from app.infrastructure.db import SessionLocal
            self._session_factory = SessionLocal
        db = self._session_factory()
        try:
            db.add(ApiCallLog(
                shipment_id=shipment_id,
                api_type=api_type,
                request_payload=mask_sensitive_fields(request_payload or {}),
                response_payload=mask_sensitive_fields(response_payload or {}),
                http_status=status,
                execution_time_ms=elapsed_ms,
                correlation_id=correlation_id,
            ))
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to record carrier call {api_type}: {e}")
        finally:
            db.close()


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"data": body}


class FakeCarrier(CarrierPort):
    """In-memory carrier for development and tests.

    AWBs start at status ``Manifested`` (unmapped) until ``set_status`` moves them.
    """

    def __init__(self):
        self.should_succeed = True
        self.failure_reason = "Carrier unavailable"
        self.statuses: Dict[str, str] = {}
        self.failing_awbs: Set[str] = set()
        self.created: List[Dict[str, Any]] = []
        self.track_calls: List[str] = []
        self._lock = threading.Lock()

    def configure(self, should_succeed: bool = True, failure_reason: str = "Carrier unavailable"):
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def set_status(self, awb: str, raw_status: str):
        with self._lock:
            self.statuses[awb] = raw_status

    def fail_tracking(self, awb: str):
        with self._lock:
            self.failing_awbs.add(awb)

    def create_shipment(self, payload: Dict[str, Any]) -> str:
        if not self.should_succeed:
            raise CarrierError(self.failure_reason)
        awb = f"FAKE-{uuid.uuid4().hex[:12].upper()}"
        with self._lock:
            self.created.append(dict(payload))
            self.statuses[awb] = "Manifested"
        return awb

    def track(self, awb: str, shipment_id: Optional[str] = None) -> CarrierTracking:
        with self._lock:
            self.track_calls.append(awb)
            failing = not self.should_succeed or awb in self.failing_awbs
            raw_status = self.statuses.get(awb)
        if failing:
            raise CarrierError(self.failure_reason, http_status=503)
        return CarrierTracking(awb=awb, raw_status=raw_status)


_carrier: Optional[CarrierPort] = None
_carrier_lock = threading.Lock()


def build_carrier(settings: Optional[Settings] = None) -> CarrierPort:
    settings = settings or get_settings()
    if settings.CARRIER_ADAPTER == "http":
        return HttpCarrierClient(settings)
    if settings.CARRIER_ADAPTER == "fake":
        return FakeCarrier()
    raise ValueError(f"Unknown carrier adapter: {settings.CARRIER_ADAPTER}")


def get_carrier() -> CarrierPort:
    global _carrier
    with _carrier_lock:
        if _carrier is None:
            _carrier = build_carrier()
        return _carrier


def set_carrier(carrier: CarrierPort):
    global _carrier
    with _carrier_lock:
        _carrier = carrier


def reset_carrier():
    set_carrier(None)
