"""Tests for the address status machine."""
import pytest

from ipam_core.exceptions import InvalidTransitionError
from ipam_core.status import (
    METADATA_FIELDS,
    OCCUPIED_STATUSES,
    IPStatus,
    Transition,
    can_transition,
    check_transition,
    cleared_metadata,
    is_occupied,
)


def test_available_is_not_occupied():
    assert not is_occupied(IPStatus.AVAILABLE)
    assert all(is_occupied(status) for status in OCCUPIED_STATUSES)


@pytest.mark.parametrize("target", OCCUPIED_STATUSES)
def test_allocate_from_available(target):
    assert can_transition(IPStatus.AVAILABLE, target, Transition.ALLOCATE)


def test_allocate_between_occupied_states_refused():
    assert not can_transition(IPStatus.ASSIGNED, IPStatus.DHCP_MANAGED, Transition.ALLOCATE)
    with pytest.raises(InvalidTransitionError):
        check_transition(IPStatus.RESERVED, IPStatus.ASSIGNED, Transition.ALLOCATE)


def test_allocate_to_available_refused():
    assert not can_transition(IPStatus.AVAILABLE, IPStatus.AVAILABLE, Transition.ALLOCATE)


@pytest.mark.parametrize("current", list(IPStatus))
def test_release_from_anything(current):
    assert can_transition(current, IPStatus.AVAILABLE, Transition.RELEASE)


def test_release_only_targets_available():
    assert not can_transition(IPStatus.ASSIGNED, IPStatus.RESERVED, Transition.RELEASE)


def test_update_moves_between_occupied_states():
    assert can_transition(IPStatus.ASSIGNED, IPStatus.DHCP_MANAGED, Transition.UPDATE)
    assert can_transition(IPStatus.RESERVED, IPStatus.ASSIGNED, Transition.UPDATE)


@pytest.mark.parametrize("target", OCCUPIED_STATUSES)
def test_update_never_leaves_available(target):
    assert not can_transition(IPStatus.AVAILABLE, target, Transition.UPDATE)
    with pytest.raises(InvalidTransitionError):
        check_transition(IPStatus.AVAILABLE, target, Transition.UPDATE)


def test_update_keeps_or_returns_to_available():
    assert can_transition(IPStatus.AVAILABLE, IPStatus.AVAILABLE, Transition.UPDATE)
    assert can_transition(IPStatus.ASSIGNED, IPStatus.AVAILABLE, Transition.UPDATE)


def test_reserve_requires_available():
    assert can_transition("available", "reserved", "reserve")
    assert not can_transition("assigned", "reserved", "reserve")


def test_cleared_metadata():
    cleared = cleared_metadata()
    assert set(cleared) == set(METADATA_FIELDS)
    assert all(value is None for value in cleared.values())
