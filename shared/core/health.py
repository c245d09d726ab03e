"""
Health checks following the Health Check Response Format draft for HTTP
APIs and the Kubernetes liveness/readiness/startup probe conventions.
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine
from typing import Callable, Dict, Any, Optional
import os
import time
import redis
from datetime import datetime, timezone
from enum import Enum
import psutil
import logging

logger = logging.getLogger(__name__)

CheckFn = Callable[[], Dict[str, Any]]


class HealthStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ServiceHealth:
    """
    Health endpoints for one service.

    ``engine`` is checked on readiness; ``redis_url`` is checked when given
    (a Redis failure only degrades to ``warn``). ``extra_checks`` lets a
    service add its own named probes, e.g. worker scheduler state.
    """

    def __init__(
        self,
        service_name: str,
        version: str = "1.0.0",
        engine: Optional[Engine] = None,
        redis_url: Optional[str] = None,
        extra_checks: Optional[Dict[str, CheckFn]] = None,
    ):
        self.service_name = service_name
        self.version = version
        self.engine = engine
        self.redis_url = redis_url
        self.extra_checks = dict(extra_checks or {})
        self.start_time = time.time()
        self.checks_performed = 0
        self.last_check_time: Optional[float] = None

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health", status_code=status.HTTP_200_OK)
        async def health_check() -> Dict[str, Any]:
            """Liveness summary used by load balancers"""
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "timestamp": _now()
            }

        @router.get("/health/live", status_code=status.HTTP_200_OK)
        async def liveness() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        async def readiness() -> JSONResponse:
            """Dependency checks; 503 when any of them fails"""
            checks = self.perform_readiness_checks()
            overall_status = self.calculate_overall_status(checks)
            status_code = (
                status.HTTP_503_SERVICE_UNAVAILABLE
                if overall_status == HealthStatus.FAIL
                else status.HTTP_200_OK
            )

            return JSONResponse(status_code=status_code, content={
                "status": overall_status,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "checks": checks,
                "serviceId": self.service_name,
                "description": f"{self.service_name} service",
                "timestamp": _now()
            })

        @router.get("/metrics")
        async def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()

            return {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": time.time() - self.start_time,
                "checks_performed": self.checks_performed,
                "timestamp": _now(),
                "system": {
                    "memory_rss_bytes": memory.rss,
                    "memory_vms_bytes": memory.vms,
                    "cpu_percent": process.cpu_percent(),
                    "num_threads": process.num_threads()
                }
            }

        return router

    def perform_readiness_checks(self) -> Dict[str, Dict[str, Any]]:
        self.checks_performed += 1
        self.last_check_time = time.time()

        checks = {}
        if self.engine is not None:
            checks["database:connectivity"] = _timed_probe("datastore", self._ping_database, HealthStatus.FAIL)
        if self.redis_url:
            # rate limiting falls back to process-local state, so Redis only warns
            checks["cache:connectivity"] = _timed_probe("cache", self._ping_redis, HealthStatus.WARN)
        checks["storage:disk_space"] = _threshold_check(
            lambda: psutil.disk_usage('/').free / (1024 ** 3), fail_below=1, warn_below=5, unit="GB"
        )
        checks["system:memory"] = _threshold_check(
            lambda: psutil.virtual_memory().available / (1024 ** 2), fail_below=100, warn_below=500, unit="MB"
        )

        for name, check in self.extra_checks.items():
            try:
                checks[name] = check()
            except Exception as e:
                logger.error(f"Health check {name} raised: {e}")
                checks[name] = {"status": HealthStatus.FAIL, "output": str(e), "time": _now()}

        return checks

    def _ping_database(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()

    def _ping_redis(self) -> None:
        redis.from_url(self.redis_url, socket_connect_timeout=1).ping()

    @staticmethod
    def calculate_overall_status(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
        statuses = {check.get("status", HealthStatus.PASS) for check in checks.values()}
        for candidate in (HealthStatus.FAIL, HealthStatus.WARN):
            if candidate in statuses:
                return candidate
        return HealthStatus.PASS


def _timed_probe(component_type: str, probe: Callable[[], None], failure_status: HealthStatus) -> Dict[str, Any]:
    """Run ``probe`` and report its latency, or ``failure_status`` if it raises"""
    start = time.time()
    try:
        probe()
    except Exception as e:
        logger.error(f"{component_type} health check failed: {e}")
        return {"status": failure_status, "componentType": component_type, "output": str(e), "time": _now()}
    return {
        "status": HealthStatus.PASS,
        "componentType": component_type,
        "observedValue": f"{(time.time() - start) * 1000:.2f}",
        "observedUnit": "ms",
        "time": _now(),
    }


def _threshold_check(measure: Callable[[], float], fail_below: float, warn_below: float, unit: str) -> Dict[str, Any]:
    try:
        value = measure()
    except Exception as e:
        return {"status": HealthStatus.WARN, "componentType": "system", "output": str(e), "time": _now()}

    if value < fail_below:
        status_val = HealthStatus.FAIL
    elif value < warn_below:
        status_val = HealthStatus.WARN
    else:
        status_val = HealthStatus.PASS
    return {
        "status": status_val,
        "componentType": "system",
        "observedValue": f"{value:.2f}",
        "observedUnit": unit,
        "time": _now(),
    }
