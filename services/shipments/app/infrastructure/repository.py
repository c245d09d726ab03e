"""Persistence for shipments, their timeline and operator alerts.

The state machine relies on three operations only: ``get``,
``compare_and_swap`` and ``append_timeline``. The remaining queries serve
the booking service and the reconciliation workers.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.domain.lifecycle import ShipmentLeg, ShipmentStatus
from app.domain.models import Shipment, ShipmentAlert, TimelineEntry, utcnow


class ShipmentRepository:
    def __init__(self, db: Session):
        self.db = db

    # -- shipments ---------------------------------------------------------

    def get(self, shipment_id: str) -> Optional[Shipment]:
        """Read the persisted row, bypassing any stale copy in the session."""
        stmt = (
            select(Shipment)
            .where(Shipment.id == shipment_id)
            .execution_options(populate_existing=True)
        )
        return self.db.scalars(stmt).first()

    def get_by_booking_reference(self, booking_reference_id: str) -> Optional[Shipment]:
        stmt = select(Shipment).where(Shipment.booking_reference_id == booking_reference_id)
        return self.db.scalars(stmt).first()

    def insert(self, shipment: Shipment) -> Shipment:
        self.db.add(shipment)
        self.db.flush()
        return shipment

    def compare_and_swap(self, shipment_id: str, expected_version: int, values: Dict[str, Any]) -> bool:
        """Write ``values`` and bump the version only if it still equals ``expected_version``.

        Returns False when another writer got there first; nothing is changed then.
        """
        stmt = (
            update(Shipment)
            .where(Shipment.id == shipment_id, Shipment.version == expected_version)
            .values(version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def list(self, user_id: Optional[str] = None) -> List[Shipment]:
        stmt = select(Shipment).order_by(Shipment.created_at)
        if user_id is not None:
            stmt = stmt.where(Shipment.user_id == user_id)
        return list(self.db.scalars(stmt))

    def awaiting_carrier_sync(self) -> List[Shipment]:
        stmt = (
            select(Shipment)
            .where(
                Shipment.current_leg == ShipmentLeg.DOMESTIC.value,
                Shipment.domestic_awb.is_not(None),
                Shipment.is_simulated.is_(False),
                Shipment.status != ShipmentStatus.DRAFT.value,
            )
            .order_by(Shipment.updated_at)
        )
        return list(self.db.scalars(stmt))

    def stuck_in_domestic_leg(self, updated_before: datetime) -> List[Shipment]:
        stmt = (
            select(Shipment)
            .where(
                Shipment.current_leg == ShipmentLeg.DOMESTIC.value,
                Shipment.status != ShipmentStatus.DRAFT.value,
                Shipment.updated_at < updated_before,
            )
            .order_by(Shipment.updated_at)
        )
        return list(self.db.scalars(stmt))

    def simulated_in_progress(self) -> List[Shipment]:
        stmt = (
            select(Shipment)
            .where(
                Shipment.is_simulated.is_(True),
                Shipment.current_leg != ShipmentLeg.COMPLETED.value,
                Shipment.status != ShipmentStatus.DRAFT.value,
            )
            .order_by(Shipment.updated_at)
        )
        return list(self.db.scalars(stmt))

    # -- timeline ----------------------------------------------------------

    def append_timeline(
        self,
        shipment_id: str,
        status: str,
        leg: str,
        source: str,
        version: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TimelineEntry:
        """Append the entry for ``version``; an existing entry for it is returned as is."""
        existing = self.db.scalars(
            select(TimelineEntry).where(
                TimelineEntry.shipment_id == shipment_id,
                TimelineEntry.version == version,
            )
        ).first()
        if existing is not None:
            return existing

        entry = TimelineEntry(
            shipment_id=shipment_id,
            status=status,
            leg=leg,
            source=source,
            version=version,
            details=dict(metadata or {}),
            created_at=utcnow(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def timeline(self, shipment_id: str) -> List[TimelineEntry]:
        stmt = (
            select(TimelineEntry)
            .where(TimelineEntry.shipment_id == shipment_id)
            .order_by(TimelineEntry.created_at, TimelineEntry.version)
        )
        return list(self.db.scalars(stmt))

    # -- alerts ------------------------------------------------------------

    def add_alert(self, shipment: Shipment, kind: str, stuck_hours: int, threshold_hours: int) -> Optional[ShipmentAlert]:
        """Insert an alert for the shipment's current version; None if already raised."""
        existing = self.db.scalars(
            select(ShipmentAlert).where(
                ShipmentAlert.shipment_id == shipment.id,
                ShipmentAlert.kind == kind,
                ShipmentAlert.shipment_version == shipment.version,
            )
        ).first()
        if existing is not None:
            return None

        alert = ShipmentAlert(
            shipment_id=shipment.id,
            kind=kind,
            shipment_version=shipment.version,
            stuck_hours=stuck_hours,
            threshold_hours=threshold_hours,
            created_at=utcnow(),
        )
        self.db.add(alert)
        self.db.flush()
        return alert

    def alerts(self, shipment_id: str) -> List[ShipmentAlert]:
        stmt = (
            select(ShipmentAlert)
            .where(ShipmentAlert.shipment_id == shipment_id)
            .order_by(ShipmentAlert.created_at)
        )
        return list(self.db.scalars(stmt))
