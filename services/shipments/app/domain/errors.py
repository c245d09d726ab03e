"""Lifecycle error taxonomy.

Each error carries the machine code surfaced to callers and the HTTP status
the API layer answers with.
"""

import math
from typing import Any, Dict, List, Optional


class LifecycleError(Exception):
    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message, "errorCode": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailed(LifecycleError):
    code = "VALIDATION_ERROR"
    http_status = 400


class Unauthorized(LifecycleError):
    code = "UNAUTHORIZED"
    http_status = 401


class Forbidden(LifecycleError):
    code = "FORBIDDEN"
    http_status = 403


class ShipmentNotFound(LifecycleError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, shipment_id: str):
        super().__init__(f"Shipment not found: {shipment_id}")
        self.shipment_id = shipment_id


class InvalidTransition(LifecycleError):
    code = "INVALID_TRANSITION"
    http_status = 400

    def __init__(self, current: str, target: str):
        super().__init__(f"Transition from {current} to {target} is not allowed")
        self.current = current
        self.target = target


class VersionConflict(LifecycleError):
    code = "VERSION_CONFLICT"
    http_status = 409

    def __init__(self, shipment_id: str, expected_version: int, actual_version: Optional[int] = None):
        super().__init__("Shipment was modified by someone else, please refresh and try again")
        self.shipment_id = shipment_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class RateLimited(LifecycleError):
    code = "RATE_LIMITED"
    http_status = 429

    def __init__(self, retry_after_ms: int):
        self.retry_after_seconds = max(1, math.ceil(retry_after_ms / 1000))
        super().__init__(f"Too many requests, retry after {self.retry_after_seconds}s")
        self.retry_after_ms = retry_after_ms


class CarrierError(LifecycleError):
    """The external carrier was unreachable or answered with an error."""

    code = "UPSTREAM_FAILURE"
    http_status = 502

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = http_status


class InternalError(LifecycleError):
    code = "INTERNAL_ERROR"
    http_status = 500
