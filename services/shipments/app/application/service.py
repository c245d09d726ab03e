import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.application.schemas import BookingRequest
from app.application.state_machine import StateMachine, TransitionResult
from app.domain.errors import CarrierError, Forbidden, InvalidTransition, ShipmentNotFound, ValidationFailed, VersionConflict
from app.domain.lifecycle import ADMIN_ACTIONS, ShipmentLeg, ShipmentStatus, TimelineSource, is_terminal
from app.domain.models import Shipment, ShipmentAlert, TimelineEntry, new_id, utcnow
from app.infrastructure.auth import Actor, can_administer
from app.infrastructure.carrier import CarrierPort, get_carrier
from app.infrastructure.repository import ShipmentRepository
from shared.core import get_logger

logger = get_logger(__name__)


class ShipmentService:
    def __init__(
        self,
        db: Session,
        state_machine: Optional[StateMachine] = None,
        carrier: Optional[CarrierPort] = None,
    ):
        self.db = db
        self.repo = ShipmentRepository(db)
        self.state_machine = state_machine or StateMachine(db)
        self.carrier = carrier or get_carrier()

    # -- reads -------------------------------------------------------------

    def get(self, actor: Actor, shipment_id: str) -> Shipment:
        shipment = self.repo.get(shipment_id)
        if shipment is None:
            raise ShipmentNotFound(shipment_id)
        if shipment.user_id != actor.id and not can_administer(actor):
            raise Forbidden("Not allowed to access this shipment")
        return shipment

    def list(self, actor: Actor) -> List[Shipment]:
        if can_administer(actor):
            return self.repo.list()
        return self.repo.list(user_id=actor.id)

    def timeline(self, actor: Actor, shipment_id: str) -> List[TimelineEntry]:
        self.get(actor, shipment_id)
        return self.repo.timeline(shipment_id)

    def alerts(self, actor: Actor, shipment_id: str) -> List[ShipmentAlert]:
        self.get(actor, shipment_id)
        return self.repo.alerts(shipment_id)

    # -- booking -----------------------------------------------------------

    def book(self, actor: Actor, data: BookingRequest) -> Tuple[Shipment, bool]:
        """Create the shipment at version 1; returns ``(shipment, created)``.

        Replaying a ``booking_reference_id`` returns the original shipment.
        """
        existing = self._existing_booking(actor, data.booking_reference_id)
        if existing is not None:
            return existing, False

        status = ShipmentStatus.DRAFT if data.draft else ShipmentStatus.BOOKED
        now = utcnow()
        shipment = Shipment(
            id=new_id(),
            user_id=actor.id,
            booking_reference_id=data.booking_reference_id,
            status=status.value,
            current_leg=ShipmentLeg.DOMESTIC.value,
            version=1,
            is_simulated=data.simulated,
            recipient_name=data.recipient_name,
            recipient_phone=data.recipient_phone,
            recipient_email=data.recipient_email,
            origin_address=data.origin_address,
            destination_address=data.destination_address,
            destination_country=data.destination_country,
            weight_kg=data.weight_kg,
            declared_value=data.declared_value,
            shipment_type=data.shipment_type,
            created_at=now,
            updated_at=now,
        )
        if status == ShipmentStatus.BOOKED and not shipment.is_simulated:
            dims = data.dimensions.model_dump() if data.dimensions else None
            shipment.domestic_awb = self._request_domestic_awb(shipment, dimensions=dims)

        try:
            self.repo.insert(shipment)
            entry = self.repo.append_timeline(
                shipment.id,
                status=shipment.status,
                leg=shipment.current_leg,
                source=TimelineSource.INTERNAL.value,
                version=1,
                metadata={"action": "book", "actor_id": actor.id},
            )
            self.db.commit()
        except IntegrityError:
            # lost a race on the same booking reference
            self.db.rollback()
            existing = self._existing_booking(actor, data.booking_reference_id)
            if existing is None:
                raise
            return existing, False

        logger.info(
            f"Shipment {shipment.id} booked at {shipment.status}",
            extra={"extra_fields": {"shipment_id": shipment.id, "simulated": shipment.is_simulated}},
        )
        self.state_machine.announce(shipment, entry)
        return shipment, True

    def confirm_draft(self, actor: Actor, shipment_id: str, expected_version: int) -> TransitionResult:
        shipment = self.get(actor, shipment_id)
        if is_terminal(shipment.status):
            raise InvalidTransition(shipment.status, ShipmentStatus.BOOKED.value)
        if shipment.version != expected_version:
            raise VersionConflict(shipment_id, expected_version, shipment.version)
        if shipment.status != ShipmentStatus.DRAFT.value:
            raise InvalidTransition(shipment.status, ShipmentStatus.BOOKED.value)

        changes = {}
        if not shipment.is_simulated and not shipment.domestic_awb:
            awb = self._request_domestic_awb(shipment)
            if awb:
                changes["domestic_awb"] = awb

        return self.state_machine.transition(
            shipment_id,
            ShipmentStatus.BOOKED,
            TimelineSource.INTERNAL,
            expected_version,
            metadata={"action": "confirm", "actor_id": actor.id},
            changes=changes,
        )

    # -- staff actions -----------------------------------------------------

    def apply_admin_action(self, actor: Actor, shipment_id: str, action: str, expected_version: int) -> TransitionResult:
        target = ADMIN_ACTIONS.get(action)
        if target is None:
            raise ValidationFailed(f"Unknown admin action: {action}")
        return self.state_machine.transition(
            shipment_id,
            target,
            TimelineSource.INTERNAL,
            expected_version,
            metadata={"action": action, "admin_user_id": actor.id},
        )

    def dispatch_international(self, actor: Actor, shipment_id: str, expected_version: int) -> TransitionResult:
        return self.state_machine.transition(
            shipment_id,
            ShipmentStatus.DISPATCHED,
            TimelineSource.INTERNAL,
            expected_version,
            metadata={"action": "dispatch", "admin_user_id": actor.id},
            changes={"international_awb": f"INTL-{uuid.uuid4()}"},
        )

    # -- helpers -----------------------------------------------------------

    def _existing_booking(self, actor: Actor, booking_reference_id: str) -> Optional[Shipment]:
        existing = self.repo.get_by_booking_reference(booking_reference_id)
        if existing is not None and existing.user_id != actor.id:
            raise ValidationFailed("Booking reference already in use")
        return existing

    def _request_domestic_awb(self, shipment: Shipment, dimensions: Optional[Dict[str, Any]] = None) -> Optional[str]:
        payload = {
            "shipment_id": shipment.id,
            "booking_reference_id": shipment.booking_reference_id,
            "sender_address": shipment.origin_address,
            "recipient_name": shipment.recipient_name,
            "recipient_phone": shipment.recipient_phone,
            "recipient_address": shipment.destination_address,
            "weight_kg": shipment.weight_kg,
            "declared_value": shipment.declared_value,
            "shipment_type": shipment.shipment_type,
        }
        if dimensions:
            payload["dimensions"] = dimensions
        try:
            return self.carrier.create_shipment(payload)
        except CarrierError as e:
            logger.warning(
                f"Carrier booking failed for shipment {shipment.id}, continuing without AWB: {e.message}",
                extra={"extra_fields": {"shipment_id": shipment.id, "upstream_status": e.upstream_status}},
            )
            return None
