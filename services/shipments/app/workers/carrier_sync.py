"""Reconcile domestic-leg shipments with the carrier's reported status."""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.engine import Engine

from app.application.realtime import TimelineBroker
from app.application.state_machine import StateMachine
from app.core_settings import get_settings
from app.domain.errors import VersionConflict
from app.domain.lifecycle import TimelineSource, is_transition_allowed, map_carrier_status
from app.infrastructure import db as database
from app.infrastructure.carrier import CarrierPort, get_carrier
from app.infrastructure.notifications import StatusNotifier
from app.infrastructure.repository import ShipmentRepository
from app.workers.base import RunResult, run_guard
from shared.core import get_logger

logger = get_logger(__name__)

UPDATED = "updated"
SKIPPED = "skipped"
CONFLICT = "conflict"


@dataclass
class SyncResult(RunResult):
    updated: int = 0


@dataclass(frozen=True)
class _Candidate:
    id: str
    status: str
    version: int
    awb: str


class CarrierSyncWorker:
    name = "carrier_sync"

    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        engine: Optional[Engine] = None,
        carrier: Optional[CarrierPort] = None,
        concurrency: Optional[int] = None,
        broker: Optional[TimelineBroker] = None,
        notifier: Optional[StatusNotifier] = None,
    ):
        self.session_factory = session_factory or database.SessionLocal
        self.engine = engine or database.engine
        self.carrier = carrier or get_carrier()
        self.concurrency = get_settings().SYNC_CONCURRENCY if concurrency is None else concurrency
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        self.broker = broker
        self.notifier = notifier

    def run(self) -> SyncResult:
        result = SyncResult()
        with run_guard(self.name, self.engine) as acquired:
            if not acquired:
                logger.info("Carrier sync already running, skipping this run")
                result.lock_acquired = False
                return result

            with self.session_factory() as db:
                candidates = [
                    _Candidate(s.id, s.status, s.version, s.domestic_awb)
                    for s in ShipmentRepository(db).awaiting_carrier_sync()
                ]

            if not candidates:
                return result

            with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="carrier-sync") as pool:
                futures = {pool.submit(self._sync_one, c): c for c in candidates}
                for future in as_completed(futures):
                    candidate = futures[future]
                    result.processed += 1
                    try:
                        outcome = future.result()
                    except Exception as e:
                        logger.error(
                            f"Carrier sync failed for shipment {candidate.id}: {e}",
                            extra={"extra_fields": {"shipment_id": candidate.id, "awb": candidate.awb}},
                        )
                        result.record_failure(candidate.id, e)
                        continue
                    if outcome == UPDATED:
                        result.updated += 1
                    elif outcome == CONFLICT:
                        result.conflicts += 1
                    else:
                        result.skipped += 1

        logger.info(
            "Carrier sync finished",
            extra={"extra_fields": {k: v for k, v in result.to_dict().items() if k != "failures"}},
        )
        return result

    def _sync_one(self, candidate: _Candidate) -> str:
        tracking = self.carrier.track(candidate.awb, shipment_id=candidate.id)
        target = map_carrier_status(tracking.raw_status)
        if target is None or target.value == candidate.status:
            return SKIPPED
        if not is_transition_allowed(candidate.status, target):
            logger.debug(f"Carrier reports {tracking.raw_status} for {candidate.id} at {candidate.status}, not a direct step")
            return SKIPPED

        with self.session_factory() as db:
            machine = StateMachine(db, broker=self.broker, notifier=self.notifier)
            try:
                machine.transition(
                    candidate.id,
                    target,
                    TimelineSource.EXTERNAL,
                    candidate.version,
                    metadata={
                        "awb": candidate.awb,
                        "raw_status": tracking.raw_status,
                        "location": tracking.location,
                        "carrier_timestamp": tracking.timestamp,
                    },
                )
            except VersionConflict:
                logger.info(f"Shipment {candidate.id} changed during carrier sync, leaving it for the next run")
                return CONFLICT
        return UPDATED


def run_carrier_sync(**kwargs) -> SyncResult:
    return CarrierSyncWorker(**kwargs).run()
