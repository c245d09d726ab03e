"""Advance demo shipments one step along the main path per run."""

import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.engine import Engine

from app.application.realtime import TimelineBroker
from app.application.state_machine import StateMachine
from app.domain.errors import VersionConflict
from app.domain.lifecycle import ShipmentStatus, TimelineSource, next_simulated_status
from app.infrastructure import db as database
from app.infrastructure.notifications import StatusNotifier
from app.infrastructure.repository import ShipmentRepository
from app.workers.base import RunResult, run_guard
from shared.core import get_logger

logger = get_logger(__name__)


@dataclass
class SimulationResult(RunResult):
    advanced: int = 0


class SimulationWorker:
    name = "simulation"

    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        engine: Optional[Engine] = None,
        broker: Optional[TimelineBroker] = None,
        notifier: Optional[StatusNotifier] = None,
    ):
        self.session_factory = session_factory or database.SessionLocal
        self.engine = engine or database.engine
        self.broker = broker
        self.notifier = notifier

    def run(self) -> SimulationResult:
        result = SimulationResult()
        with run_guard(self.name, self.engine) as acquired:
            if not acquired:
                result.lock_acquired = False
                return result

            with self.session_factory() as db:
                candidates = [(s.id, s.status, s.version) for s in ShipmentRepository(db).simulated_in_progress()]

            for shipment_id, status, version in candidates:
                result.processed += 1
                target = next_simulated_status(status)
                if target is None:
                    result.skipped += 1
                    continue

                changes = {}
                if target == ShipmentStatus.DISPATCHED:
                    changes["international_awb"] = f"SIM-{uuid.uuid4().hex[:12].upper()}"

                with self.session_factory() as db:
                    machine = StateMachine(db, broker=self.broker, notifier=self.notifier)
                    try:
                        machine.transition(
                            shipment_id,
                            target,
                            TimelineSource.SIMULATION,
                            version,
                            metadata={"simulated": True},
                            changes=changes,
                        )
                        result.advanced += 1
                    except VersionConflict:
                        result.conflicts += 1
                    except Exception as e:
                        logger.error(f"Simulation step failed for shipment {shipment_id}: {e}")
                        result.record_failure(shipment_id, e)

        logger.info(f"Simulation run advanced {result.advanced} of {result.processed} shipments")
        return result


def run_simulation(**kwargs) -> SimulationResult:
    return SimulationWorker(**kwargs).run()
