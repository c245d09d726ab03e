"""Shipment lifecycle rules: statuses, legs, sources and the transition table.

The table below is the only authority on how a shipment may move. Every
writer (staff, carrier sync, simulation, system jobs) goes through it.

    DRAFT → BOOKED → PICKED_UP → DOMESTIC_TRANSIT → AT_WAREHOUSE
          → QUALITY_CHECKED → PACKAGED → DISPATCH_APPROVED → DISPATCHED
          → IN_TRANSIT → CUSTOMS_CLEARANCE → OUT_FOR_DELIVERY → DELIVERED

    BOOKED → AT_WAREHOUSE / QUALITY_CHECKED   (counter drop-off)
    PICKED_UP → AT_WAREHOUSE                   (carrier skipped the hub scan)
    {DRAFT .. DISPATCHED} → CANCELLED
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Tuple


class ShipmentStatus(str, Enum):
    DRAFT = "DRAFT"
    BOOKED = "BOOKED"
    PICKED_UP = "PICKED_UP"
    DOMESTIC_TRANSIT = "DOMESTIC_TRANSIT"
    AT_WAREHOUSE = "AT_WAREHOUSE"
    QUALITY_CHECKED = "QUALITY_CHECKED"
    PACKAGED = "PACKAGED"
    DISPATCH_APPROVED = "DISPATCH_APPROVED"
    DISPATCHED = "DISPATCHED"
    IN_TRANSIT = "IN_TRANSIT"
    CUSTOMS_CLEARANCE = "CUSTOMS_CLEARANCE"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class ShipmentLeg(str, Enum):
    DOMESTIC = "DOMESTIC"
    INTERNATIONAL = "INTERNATIONAL"
    COMPLETED = "COMPLETED"


class TimelineSource(str, Enum):
    EXTERNAL = "EXTERNAL"      # carrier API
    INTERNAL = "INTERNAL"      # staff and customer actions
    SIMULATION = "SIMULATION"  # demo driver
    SYSTEM = "SYSTEM"          # automated jobs


S = ShipmentStatus

TRANSITIONS: Dict[ShipmentStatus, FrozenSet[ShipmentStatus]] = {
    S.DRAFT: frozenset({S.BOOKED, S.CANCELLED}),
    S.BOOKED: frozenset({S.PICKED_UP, S.AT_WAREHOUSE, S.QUALITY_CHECKED, S.CANCELLED}),
    S.PICKED_UP: frozenset({S.DOMESTIC_TRANSIT, S.AT_WAREHOUSE, S.CANCELLED}),
    S.DOMESTIC_TRANSIT: frozenset({S.AT_WAREHOUSE, S.CANCELLED}),
    S.AT_WAREHOUSE: frozenset({S.QUALITY_CHECKED, S.CANCELLED}),
    S.QUALITY_CHECKED: frozenset({S.PACKAGED, S.CANCELLED}),
    S.PACKAGED: frozenset({S.DISPATCH_APPROVED, S.CANCELLED}),
    S.DISPATCH_APPROVED: frozenset({S.DISPATCHED, S.CANCELLED}),
    S.DISPATCHED: frozenset({S.IN_TRANSIT, S.CANCELLED}),
    S.IN_TRANSIT: frozenset({S.CUSTOMS_CLEARANCE}),
    S.CUSTOMS_CLEARANCE: frozenset({S.OUT_FOR_DELIVERY}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED}),
    S.DELIVERED: frozenset(),  # terminal
    S.CANCELLED: frozenset(),  # terminal
}

_LEGS: Dict[ShipmentStatus, ShipmentLeg] = {
    S.DRAFT: ShipmentLeg.DOMESTIC,
    S.BOOKED: ShipmentLeg.DOMESTIC,
    S.PICKED_UP: ShipmentLeg.DOMESTIC,
    S.DOMESTIC_TRANSIT: ShipmentLeg.DOMESTIC,
    S.AT_WAREHOUSE: ShipmentLeg.DOMESTIC,
    S.QUALITY_CHECKED: ShipmentLeg.DOMESTIC,
    S.PACKAGED: ShipmentLeg.DOMESTIC,
    S.DISPATCH_APPROVED: ShipmentLeg.DOMESTIC,
    S.DISPATCHED: ShipmentLeg.INTERNATIONAL,
    S.IN_TRANSIT: ShipmentLeg.INTERNATIONAL,
    S.CUSTOMS_CLEARANCE: ShipmentLeg.INTERNATIONAL,
    S.OUT_FOR_DELIVERY: ShipmentLeg.INTERNATIONAL,
    S.DELIVERED: ShipmentLeg.COMPLETED,
    S.CANCELLED: ShipmentLeg.COMPLETED,
}

# Main line walked by the simulation driver, one step per run.
SIMULATION_PATH: Tuple[ShipmentStatus, ...] = (
    S.BOOKED,
    S.PICKED_UP,
    S.DOMESTIC_TRANSIT,
    S.AT_WAREHOUSE,
    S.QUALITY_CHECKED,
    S.PACKAGED,
    S.DISPATCH_APPROVED,
    S.DISPATCHED,
    S.IN_TRANSIT,
    S.CUSTOMS_CLEARANCE,
    S.OUT_FOR_DELIVERY,
    S.DELIVERED,
)

# Staff actions accepted by the admin endpoint.
ADMIN_ACTIONS: Dict[str, ShipmentStatus] = {
    "receive": S.AT_WAREHOUSE,
    "quality_check": S.QUALITY_CHECKED,
    "package": S.PACKAGED,
    "approve_dispatch": S.DISPATCH_APPROVED,
    "cancel": S.CANCELLED,
}

# Raw domestic carrier statuses. Anything not listed triggers no transition
# and the raw string is never stored on the shipment.
CARRIER_STATUS_MAP: Dict[str, ShipmentStatus] = {
    "Picked Up": S.PICKED_UP,
    "In Transit": S.DOMESTIC_TRANSIT,
    "Delivered": S.AT_WAREHOUSE,
}


def leg_for(status: ShipmentStatus) -> ShipmentLeg:
    return _LEGS[ShipmentStatus(status)]


def legal_successors(status: ShipmentStatus) -> FrozenSet[ShipmentStatus]:
    return TRANSITIONS[ShipmentStatus(status)]


def is_terminal(status: ShipmentStatus) -> bool:
    return not legal_successors(status)


def is_transition_allowed(current: ShipmentStatus, target: ShipmentStatus) -> bool:
    return ShipmentStatus(target) in legal_successors(current)


def next_simulated_status(current: ShipmentStatus) -> Optional[ShipmentStatus]:
    """Next step on the main line, or None when there is nothing to advance."""
    current = ShipmentStatus(current)
    if current not in SIMULATION_PATH:
        return None
    index = SIMULATION_PATH.index(current)
    if index + 1 >= len(SIMULATION_PATH):
        return None
    return SIMULATION_PATH[index + 1]


def map_carrier_status(raw_status: Optional[str]) -> Optional[ShipmentStatus]:
    if raw_status is None:
        return None
    return CARRIER_STATUS_MAP.get(raw_status.strip())


def replay(entries: Iterable) -> Tuple[ShipmentStatus, int]:
    """Rebuild (status, version) from timeline entries.

    Entries must carry ``status`` and ``version`` and are applied in
    ``(created_at, version)`` order. Each step after the first must be a
    legal transition and advance the version by exactly one.
    """
    ordered = sorted(entries, key=lambda e: (e.created_at, e.version))
    if not ordered:
        raise ValueError("cannot replay an empty timeline")

    status = ShipmentStatus(ordered[0].status)
    version = ordered[0].version
    if version != 1:
        raise ValueError(f"timeline must start at version 1, found {version}")

    for entry in ordered[1:]:
        target = ShipmentStatus(entry.status)
        if entry.version != version + 1:
            raise ValueError(f"version gap: {version} -> {entry.version}")
        if not is_transition_allowed(status, target):
            raise ValueError(f"illegal step in timeline: {status.value} -> {target.value}")
        status, version = target, entry.version

    return status, version
