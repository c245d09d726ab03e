"""The single entry point that moves a shipment between statuses.

Staff routes, the carrier sync, the simulation driver and system jobs all
call ``StateMachine.transition``. The order of checks is fixed:

1. the shipment exists
2. the caller's ``expected_version`` is still current
3. the target is a legal successor of the current status
4. compare-and-swap write of status, leg and ``version + 1``
5. timeline append in the same transaction, then commit
6. push and notifications, after commit and best-effort
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.application.realtime import TimelineBroker, get_broker
from app.application.schemas import ShipmentRead, TimelineEntryRead
from app.domain.errors import InvalidTransition, ShipmentNotFound, ValidationFailed, VersionConflict
from app.domain.lifecycle import ShipmentStatus, TimelineSource, is_terminal, is_transition_allowed, leg_for
from app.domain.models import Shipment, TimelineEntry, utcnow
from app.infrastructure.notifications import StatusNotifier, get_notifier
from app.infrastructure.repository import ShipmentRepository
from shared.core import get_logger

logger = get_logger(__name__)

# Columns a transition may set besides status, leg, version and updated_at.
TRANSITION_CHANGES = frozenset({"domestic_awb", "international_awb"})


@dataclass
class TransitionResult:
    shipment: Shipment
    entry: TimelineEntry


class StateMachine:
    def __init__(
        self,
        db: Session,
        broker: Optional[TimelineBroker] = None,
        notifier: Optional[StatusNotifier] = None,
    ):
        self.db = db
        self.repo = ShipmentRepository(db)
        self.broker = broker or get_broker()
        self.notifier = notifier or get_notifier()

    def transition(
        self,
        shipment_id: str,
        target_status,
        source: TimelineSource,
        expected_version: int,
        metadata: Optional[Dict[str, Any]] = None,
        changes: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        try:
            target = ShipmentStatus(target_status)
        except ValueError:
            raise ValidationFailed(f"Unknown status: {target_status}")
        unexpected = set(changes or {}) - TRANSITION_CHANGES
        if unexpected:
            raise ValueError(f"transition cannot change {sorted(unexpected)}")

        shipment = self.repo.get(shipment_id)
        if shipment is None:
            raise ShipmentNotFound(shipment_id)
        # completed shipments are final whatever version the caller holds
        if is_terminal(shipment.status):
            raise InvalidTransition(shipment.status, target.value)
        if shipment.version != expected_version:
            raise VersionConflict(shipment_id, expected_version, shipment.version)
        if not is_transition_allowed(shipment.status, target):
            raise InvalidTransition(shipment.status, target.value)

        previous = shipment.status
        new_version = expected_version + 1
        values = {
            "status": target.value,
            "current_leg": leg_for(target).value,
            "updated_at": utcnow(),
            **(changes or {}),
        }
        try:
            if not self.repo.compare_and_swap(shipment_id, expected_version, values):
                raise VersionConflict(shipment_id, expected_version)
            entry = self.repo.append_timeline(
                shipment_id,
                status=target.value,
                leg=values["current_leg"],
                source=TimelineSource(source).value,
                version=new_version,
                metadata=metadata,
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise VersionConflict(shipment_id, expected_version)
        except Exception:
            self.db.rollback()
            raise

        shipment = self.repo.get(shipment_id)
        logger.info(
            f"Shipment {shipment_id} moved {previous} -> {target.value}",
            extra={"extra_fields": {
                "shipment_id": shipment_id,
                "from_status": previous,
                "to_status": target.value,
                "version": new_version,
                "source": TimelineSource(source).value,
            }},
        )
        self.announce(shipment, entry)
        return TransitionResult(shipment=shipment, entry=entry)

    def announce(self, shipment: Shipment, entry: TimelineEntry):
        """Push the committed entry and notify the owner. Never raises."""
        try:
            shipment_body = ShipmentRead.model_validate(shipment).model_dump(mode="json")
            entry_body = TimelineEntryRead.model_validate(entry).model_dump(mode="json")
            self.broker.publish_transition(shipment_body, entry_body)
            self.notifier.notify(shipment_body)
        except Exception as e:
            logger.error(f"Post-commit side effects failed for shipment {shipment.id}: {e}", exc_info=True)
