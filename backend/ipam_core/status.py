"""
Address status machine.

Available is both the initial and the released state; an address with no
record at all counts as Available.
"""
from enum import Enum

from .exceptions import InvalidTransitionError


class IPStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    ASSIGNED = "assigned"
    DHCP_MANAGED = "dhcp"
    STATIC_MANAGED = "static"


class Transition(str, Enum):
    ALLOCATE = "allocate"
    RESERVE = "reserve"
    RELEASE = "release"
    UPDATE = "update"


OCCUPIED_STATUSES = (
    IPStatus.ASSIGNED,
    IPStatus.RESERVED,
    IPStatus.DHCP_MANAGED,
    IPStatus.STATIC_MANAGED,
)

# Occupied addresses a new reservation may not cover
NON_RESERVABLE_STATUSES = (
    IPStatus.ASSIGNED,
    IPStatus.DHCP_MANAGED,
    IPStatus.STATIC_MANAGED,
)

METADATA_FIELDS = ("hostname", "mac_address", "device_name", "assigned_to", "description")


def is_occupied(status) -> bool:
    return IPStatus(status) in OCCUPIED_STATUSES


def can_transition(current, target, via: Transition) -> bool:
    current, target, via = IPStatus(current), IPStatus(target), Transition(via)

    if via == Transition.ALLOCATE:
        return current == IPStatus.AVAILABLE and target in OCCUPIED_STATUSES
    if via == Transition.RESERVE:
        return current == IPStatus.AVAILABLE and target == IPStatus.RESERVED
    if via == Transition.RELEASE:
        return target == IPStatus.AVAILABLE
    # Updates never take an address out of the pool; that is allocate's job
    return not (current == IPStatus.AVAILABLE and target in OCCUPIED_STATUSES)


def check_transition(current, target, via: Transition) -> None:
    if not can_transition(current, target, via):
        raise InvalidTransitionError(IPStatus(current).value, IPStatus(target).value, Transition(via).value)


def cleared_metadata() -> dict:
    """Field values that wipe every metadata field on release."""
    return {field: None for field in METADATA_FIELDS}
