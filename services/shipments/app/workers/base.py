import threading
import zlib
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List

from sqlalchemy import text
from sqlalchemy.engine import Engine

_local_locks: Dict[str, threading.Lock] = {}
_local_locks_guard = threading.Lock()


@dataclass
class RunResult:
    processed: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    lock_acquired: bool = True

    def record_failure(self, shipment_id: str, error: Exception):
        self.errors += 1
        self.failures.append({
            "shipment_id": shipment_id,
            "error": getattr(error, "message", None) or str(error),
            "errorCode": getattr(error, "code", "INTERNAL_ERROR"),
        })

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _local_lock(name: str) -> threading.Lock:
    with _local_locks_guard:
        return _local_locks.setdefault(name, threading.Lock())


def advisory_key(name: str) -> int:
    return zlib.crc32(f"shipments:{name}".encode())


@contextmanager
def run_guard(name: str, engine: Engine) -> Iterator[bool]:
    """Yield True if this process may run ``name`` now, False if a run is in progress.

    PostgreSQL deployments use a session advisory lock so replicas exclude
    each other; other databases fall back to an in-process lock.
    """
    if engine.dialect.name == "postgresql":
        key = advisory_key(name)
        with engine.connect() as conn:
            acquired = bool(conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key}).scalar())
            try:
                yield acquired
            finally:
                if acquired:
                    conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                    conn.commit()
        return

    lock = _local_lock(name)
    acquired = lock.acquire(blocking=False)
    try:
        yield acquired
    finally:
        if acquired:
            lock.release()
