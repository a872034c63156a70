"""
Range reservations.

A reservation is an inclusive [start, end] interval inside one subnet. Up to
`materialize_limit` of its addresses get individual Reserved records; the
allocator consults the interval itself, so addresses past the cap are still
never handed out while the reservation is active.
"""
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .audit import AuditRecorder, HistoryAction, snapshot
from .codec import IPFamily, address_key, format_address, parse_address
from .config import RESERVATION_MATERIALIZE_LIMIT
from .exceptions import (
    FamilyMismatchError,
    InvalidOrderError,
    OutOfRangeError,
    RangeConflictError,
    ResourceNotFoundError,
    StoreConflictError,
    ValidationError,
)
from .logger import log_operation
from .models import Reservation, Subnet, utcnow
from .status import NON_RESERVABLE_STATUSES, IPStatus
from .store import RecordStore
from .subnet import AddressRange, compute_range, contains, in_usable_range

UPDATABLE_FIELDS = ("purpose", "reserved_by", "expires_at")


def uncovered_segments(start: int, end: int, others: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """Parts of [start, end] not covered by any interval in `others`."""
    segments = []
    cursor = start
    for lo, hi in sorted(others):
        if lo > end:
            break
        if hi < cursor:
            continue
        if lo > cursor:
            segments.append((cursor, lo - 1))
        cursor = hi + 1
        if cursor > end:
            return segments
    segments.append((cursor, end))
    return segments


class ReservationManager:
    def __init__(
        self,
        store: RecordStore,
        audit: AuditRecorder,
        materialize_limit: int = RESERVATION_MATERIALIZE_LIMIT,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.materialize_limit = materialize_limit
        self.clock = clock

    def create_reservation(
        self,
        subnet_id: int,
        start_ip: str,
        end_ip: str,
        purpose: Optional[str] = None,
        reserved_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        actor: Optional[str] = None,
    ) -> Reservation:
        subnet = self.store.get_subnet(subnet_id)
        if not subnet:
            log_operation("create_reservation", "failed", {"subnet_id": subnet_id, "reason": "not_found"})
            raise ResourceNotFoundError("Subnet", subnet_id)

        address_range = compute_range(subnet.network_address, subnet.prefix_length, subnet.family)
        start = self._endpoint(subnet, address_range, start_ip)
        end = self._endpoint(subnet, address_range, end_ip)
        family = IPFamily(subnet.family)
        start_text, end_text = format_address(start, family), format_address(end, family)

        if start > end:
            log_operation("create_reservation", "failed", {"start": start_text, "end": end_text, "reason": "order"})
            raise InvalidOrderError(start_text, end_text)

        self._check_conflicts(subnet, start, end, start_text, end_text)

        reservation = Reservation(
            subnet_id=subnet.id,
            start_ip=start_text,
            end_ip=end_text,
            start_key=address_key(start),
            end_key=address_key(end),
            purpose=purpose,
            reserved_by=reserved_by or actor,
            expires_at=expires_at,
        )
        self.store.add_reservation(reservation)

        count = min(end - start + 1, self.materialize_limit)
        addresses = [format_address(start + offset, family) for offset in range(count)]
        fields = {
            "status": IPStatus.RESERVED,
            "description": purpose,
            "assigned_to": reservation.reserved_by,
        }
        try:
            materialized = self.store.materialize(subnet.id, addresses, fields)
        except StoreConflictError as e:
            raise RangeConflictError(start_text, end_text, [e.address]) from e

        # Same transaction as the materialized rows; anything claimed since
        # the first check aborts the reservation.
        self._check_conflicts(subnet, start, end, start_text, end_text, rollback=True)

        after = dict(snapshot(reservation), materialized=materialized)
        self._commit(HistoryAction.RESERVATION_CREATED, actor, None, after, reservation.id, subnet.id)
        self.store.refresh(reservation)
        log_operation("create_reservation", "success", {
            "id": reservation.id, "subnet_id": subnet.id, "start": start_text, "end": end_text,
            "materialized": materialized,
        })
        return reservation

    def _endpoint(self, subnet: Subnet, address_range: AddressRange, address: str) -> int:
        family, value = parse_address(address)
        if family != subnet.family:
            raise FamilyMismatchError(address, IPFamily(subnet.family).value, family.value)
        if not contains(address, subnet.network_address, subnet.prefix_length, subnet.family) \
                or not in_usable_range(value, address_range):
            raise OutOfRangeError(format_address(value, family), subnet.cidr)
        return value

    def _check_conflicts(self, subnet: Subnet, start: int, end: int, start_text: str,
                         end_text: str, rollback: bool = False) -> None:
        conflicts = self.store.find_in_range(subnet.id, start, end, NON_RESERVABLE_STATUSES)
        if not conflicts:
            return
        if rollback:
            self.store.rollback()
        addresses = [record.address for record in conflicts]
        log_operation("create_reservation", "failed", {"subnet_id": subnet.id, "conflicts": addresses})
        raise RangeConflictError(start_text, end_text, addresses)

    def delete_reservation(self, reservation_id: int, actor: Optional[str] = None) -> int:
        """
        Drop a reservation and return its still-Reserved addresses to Available.

        Addresses promoted to another status are left alone, as are addresses
        that another active reservation still covers. Returns the number of
        addresses released.
        """
        reservation = self.get_reservation(reservation_id)
        subnet_id = reservation.subnet_id
        before = snapshot(reservation)
        start, end = int(reservation.start_key, 16), int(reservation.end_key, 16)

        others = [
            (int(other.start_key, 16), int(other.end_key, 16))
            for other in self.store.active_reservations(subnet_id, self.clock())
            if other.id != reservation.id
        ]
        released = 0
        for lo, hi in uncovered_segments(start, end, others):
            released += self.store.bulk_transition(
                subnet_id, lo, hi, IPStatus.RESERVED, IPStatus.AVAILABLE
            )

        self.store.remove_reservation(reservation)
        self._commit(HistoryAction.RESERVATION_DELETED, actor, before, {"released": released},
                     reservation_id, subnet_id)
        log_operation("delete_reservation", "success", {"id": reservation_id, "released": released})
        return released

    def update_reservation(self, reservation_id: int, changes: dict, actor: Optional[str] = None) -> Reservation:
        """Edit purpose, owner or expiry. The range itself is immutable."""
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Reservation fields cannot be changed: {', '.join(sorted(unknown))}",
                {"fields": sorted(unknown)},
            )

        reservation = self.get_reservation(reservation_id)
        before = snapshot(reservation)
        for name, value in changes.items():
            setattr(reservation, name, value)
        reservation.updated_at = utcnow()
        self.store.add_reservation(reservation)

        self._commit(HistoryAction.RESERVATION_UPDATED, actor, before, snapshot(reservation),
                     reservation.id, reservation.subnet_id)
        self.store.refresh(reservation)
        log_operation("update_reservation", "success", {"id": reservation_id, "fields": sorted(changes)})
        return reservation

    def get_reservation(self, reservation_id: int) -> Reservation:
        reservation = self.store.get_reservation(reservation_id)
        if not reservation:
            raise ResourceNotFoundError("Reservation", reservation_id)
        return reservation

    def list_reservations(self, subnet_id: int = None, search: str = None,
                          active_only: bool = False) -> List[Reservation]:
        reservations = self.store.list_reservations(subnet_id, search)
        if active_only:
            now = self.clock()
            reservations = [r for r in reservations if r.is_active(now)]
        return reservations

    def purge_expired_reservations(self, now: datetime = None, actor: Optional[str] = None) -> int:
        """Delete every reservation whose expiry has passed. Returns how many were removed."""
        now = now or self.clock()
        expired = self.store.expired_reservations(now)
        for reservation in expired:
            self.delete_reservation(reservation.id, actor)
        log_operation("purge_expired_reservations", "success", {"purged": len(expired)})
        return len(expired)

    def _commit(self, action: HistoryAction, actor: Optional[str], before: Optional[dict],
                after: Optional[dict], reservation_id: int, subnet_id: int) -> None:
        try:
            self.audit.record(action, actor, before, after,
                              reservation_id=reservation_id, subnet_id=subnet_id)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
