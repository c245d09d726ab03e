from datetime import datetime, timedelta
from itertools import product
from types import SimpleNamespace

import pytest

from app.domain.lifecycle import (
    SIMULATION_PATH,
    TRANSITIONS,
    ShipmentLeg,
    ShipmentStatus,
    is_terminal,
    is_transition_allowed,
    leg_for,
    map_carrier_status,
    next_simulated_status,
    replay,
)

S = ShipmentStatus

MAIN_LINE = [
    S.DRAFT, S.BOOKED, S.PICKED_UP, S.DOMESTIC_TRANSIT, S.AT_WAREHOUSE, S.QUALITY_CHECKED,
    S.PACKAGED, S.DISPATCH_APPROVED, S.DISPATCHED, S.IN_TRANSIT, S.CUSTOMS_CLEARANCE,
    S.OUT_FOR_DELIVERY, S.DELIVERED,
]
SHORTCUTS = {(S.BOOKED, S.AT_WAREHOUSE), (S.BOOKED, S.QUALITY_CHECKED), (S.PICKED_UP, S.AT_WAREHOUSE)}
CANCELLABLE = set(MAIN_LINE[: MAIN_LINE.index(S.DISPATCHED) + 1])


def _expected_legal(current, target):
    if (current, target) in SHORTCUTS:
        return True
    if target == S.CANCELLED:
        return current in CANCELLABLE
    if current in MAIN_LINE and target in MAIN_LINE:
        return MAIN_LINE.index(target) == MAIN_LINE.index(current) + 1
    return False


@pytest.mark.parametrize("current,target", list(product(S, S)))
def test_transition_legality_over_all_pairs(current, target):
    assert is_transition_allowed(current, target) == _expected_legal(current, target)


def test_every_status_has_a_table_row():
    assert set(TRANSITIONS) == set(S)


@pytest.mark.parametrize("status", [S.DELIVERED, S.CANCELLED])
def test_terminal_statuses_accept_nothing(status):
    assert is_terminal(status)
    assert not any(is_transition_allowed(status, target) for target in S)


def test_no_status_can_return_to_draft():
    assert not any(is_transition_allowed(status, S.DRAFT) for status in S)


def test_legs():
    assert leg_for(S.DRAFT) == ShipmentLeg.DOMESTIC
    assert leg_for(S.DISPATCH_APPROVED) == ShipmentLeg.DOMESTIC
    assert leg_for(S.DISPATCHED) == ShipmentLeg.INTERNATIONAL
    assert leg_for(S.OUT_FOR_DELIVERY) == ShipmentLeg.INTERNATIONAL
    assert leg_for(S.DELIVERED) == ShipmentLeg.COMPLETED
    assert leg_for(S.CANCELLED) == ShipmentLeg.COMPLETED
    assert leg_for("BOOKED") == ShipmentLeg.DOMESTIC


def test_simulation_path_is_walkable():
    for current, target in zip(SIMULATION_PATH, SIMULATION_PATH[1:]):
        assert is_transition_allowed(current, target)
        assert next_simulated_status(current) == target
    assert next_simulated_status(S.DELIVERED) is None
    assert next_simulated_status(S.CANCELLED) is None
    assert next_simulated_status(S.DRAFT) is None


def test_carrier_status_mapping():
    assert map_carrier_status("Picked Up") == S.PICKED_UP
    assert map_carrier_status("In Transit") == S.DOMESTIC_TRANSIT
    assert map_carrier_status(" Delivered ") == S.AT_WAREHOUSE
    assert map_carrier_status("Out for pickup") is None
    assert map_carrier_status(None) is None


def _entry(status, version, minutes):
    return SimpleNamespace(status=status, version=version, created_at=datetime(2024, 1, 1) + timedelta(minutes=minutes))


def test_replay_rebuilds_status_and_version():
    entries = [
        _entry("QUALITY_CHECKED", 2, 5),
        _entry("BOOKED", 1, 0),
        _entry("PACKAGED", 3, 9),
    ]
    assert replay(entries) == (S.PACKAGED, 3)


def test_replay_orders_same_timestamp_by_version():
    entries = [_entry("PICKED_UP", 2, 0), _entry("BOOKED", 1, 0)]
    assert replay(entries) == (S.PICKED_UP, 2)


def test_replay_rejects_gaps_and_illegal_steps():
    with pytest.raises(ValueError):
        replay([])
    with pytest.raises(ValueError):
        replay([_entry("BOOKED", 2, 0)])
    with pytest.raises(ValueError):
        replay([_entry("BOOKED", 1, 0), _entry("PICKED_UP", 3, 1)])
    with pytest.raises(ValueError):
        replay([_entry("BOOKED", 1, 0), _entry("DELIVERED", 2, 1)])
