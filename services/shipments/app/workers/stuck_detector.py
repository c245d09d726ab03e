"""Flag shipments that have sat in the domestic leg for too long.

The detector only writes alerts. It never transitions a shipment.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.engine import Engine

from app.core_settings import get_settings
from app.domain.models import utcnow
from app.infrastructure import db as database
from app.infrastructure.repository import ShipmentRepository
from app.workers.base import RunResult, run_guard
from shared.core import get_logger

logger = get_logger(__name__)

STUCK_DOMESTIC = "STUCK_DOMESTIC"


@dataclass
class StuckResult(RunResult):
    flagged: int = 0
    flagged_ids: List[str] = field(default_factory=list)


class StuckShipmentDetector:
    name = "stuck_detector"

    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        engine: Optional[Engine] = None,
        threshold_hours: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory or database.SessionLocal
        self.engine = engine or database.engine
        self.threshold_hours = get_settings().STUCK_THRESHOLD_HOURS if threshold_hours is None else threshold_hours
        self._clock = clock

    def run(self) -> StuckResult:
        result = StuckResult()
        with run_guard(self.name, self.engine) as acquired:
            if not acquired:
                result.lock_acquired = False
                return result

            now = self._clock()
            cutoff = now - timedelta(hours=self.threshold_hours)
            with self.session_factory() as db:
                repo = ShipmentRepository(db)
                for shipment in repo.stuck_in_domestic_leg(cutoff):
                    result.processed += 1
                    stuck_hours = int((now - shipment.updated_at).total_seconds() // 3600)
                    try:
                        alert = repo.add_alert(shipment, STUCK_DOMESTIC, stuck_hours, self.threshold_hours)
                        db.commit()
                    except Exception as e:
                        db.rollback()
                        logger.error(f"Could not flag stuck shipment {shipment.id}: {e}")
                        result.record_failure(shipment.id, e)
                        continue

                    if alert is None:
                        result.skipped += 1
                        continue
                    result.flagged += 1
                    result.flagged_ids.append(shipment.id)
                    logger.warning(
                        f"Shipment {shipment.id} stuck in domestic leg for {stuck_hours}h",
                        extra={"extra_fields": {
                            "shipment_id": shipment.id,
                            "status": shipment.status,
                            "version": shipment.version,
                            "stuck_hours": stuck_hours,
                            "threshold_hours": self.threshold_hours,
                        }},
                    )
        return result


def detect_stuck_shipments(**kwargs) -> StuckResult:
    return StuckShipmentDetector(**kwargs).run()
