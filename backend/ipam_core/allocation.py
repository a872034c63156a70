"""
Allocation engine: assign, release and update individual addresses.

Allocation is optimistic. The engine reads the occupied set, picks a
candidate and tries to claim it; the store's unique address key decides who
wins when two callers pick the same address, and the loser rescans.
"""
import re
from typing import Callable, List, Optional, Set, Tuple

from .audit import AuditRecorder, HistoryAction, snapshot
from .codec import IPFamily, format_address, parse_address
from .config import ALLOCATION_RETRIES, IPV6_SEARCH_BUDGET
from .exceptions import (
    AlreadyOccupiedError,
    FamilyMismatchError,
    InvalidAddressError,
    OutOfRangeError,
    ResourceNotFoundError,
    SearchBudgetExceededError,
    StoreConflictError,
    SubnetFullError,
    ValidationError,
)
from .logger import logger, log_operation
from .models import IPAddress, Subnet, utcnow
from .status import (
    METADATA_FIELDS,
    IPStatus,
    Transition,
    check_transition,
    cleared_metadata,
)
from .store import RecordStore
from .subnet import AddressRange, compute_range, contains, in_usable_range

_MAC = re.compile(r"[0-9A-Fa-f]{2}([:-])(?:[0-9A-Fa-f]{2}\1){4}[0-9A-Fa-f]{2}")


def validate_metadata(metadata: Optional[dict]) -> dict:
    """Keep only known metadata fields; reject malformed hardware addresses."""
    if not metadata:
        return {}
    unknown = set(metadata) - set(METADATA_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown metadata fields: {', '.join(sorted(unknown))}",
                              {"fields": sorted(unknown)})
    mac = metadata.get("mac_address")
    if mac is not None and not _MAC.fullmatch(mac):
        raise InvalidAddressError(mac, {"reason": "hardware address must be XX:XX:XX:XX:XX:XX"})
    return dict(metadata)


class AllocationEngine:
    def __init__(
        self,
        store: RecordStore,
        audit: AuditRecorder,
        search_budget: int = IPV6_SEARCH_BUDGET,
        max_retries: int = ALLOCATION_RETRIES,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.search_budget = search_budget
        self.max_retries = max_retries
        self.clock = clock

    # ------------------------------------------------------------------ allocate

    def allocate(
        self,
        subnet_id: int,
        address: Optional[str] = None,
        metadata: Optional[dict] = None,
        status: IPStatus = IPStatus.ASSIGNED,
        actor: Optional[str] = None,
    ) -> IPAddress:
        """
        Assign an address from a subnet.

        With `address` the caller's choice is validated and claimed (manual
        path); without it the numerically lowest free address is picked
        (automatic path).
        """
        subnet = self._get_subnet(subnet_id)
        status = IPStatus(status)
        check_transition(IPStatus.AVAILABLE, status, Transition.ALLOCATE)
        fields = dict(validate_metadata(metadata), subnet_id=subnet.id, status=status)
        address_range = compute_range(subnet.network_address, subnet.prefix_length, subnet.family)

        if address is not None:
            record, before = self._allocate_manual(subnet, address_range, address, fields)
        else:
            record, before = self._allocate_auto(subnet, address_range, fields)

        self._commit(HistoryAction.ASSIGNED, actor, before, record)
        log_operation("allocate_ip", "success", {
            "address": record.address, "subnet_id": subnet.id, "status": status.value,
            "mode": "manual" if address is not None else "auto",
        })
        return record

    def _allocate_manual(self, subnet: Subnet, address_range: AddressRange, address: str,
                         fields: dict) -> Tuple[IPAddress, Optional[dict]]:
        family, value = parse_address(address)
        if family != subnet.family:
            raise FamilyMismatchError(address, IPFamily(subnet.family).value, family.value)

        canonical = format_address(value, family)
        if not contains(canonical, subnet.network_address, subnet.prefix_length, subnet.family) \
                or not in_usable_range(value, address_range):
            raise OutOfRangeError(canonical, subnet.cidr)

        existing = self.store.get_record_by_address(canonical)
        if existing is not None and existing.status != IPStatus.AVAILABLE:
            raise AlreadyOccupiedError(canonical, IPStatus(existing.status).value)

        if fields["status"] != IPStatus.RESERVED and self._reservation_covering(subnet, value):
            raise AlreadyOccupiedError(canonical, IPStatus.RESERVED.value,
                                       {"reason": "inside an active reservation"})

        before = snapshot(existing)
        try:
            record = self.store.upsert(canonical, fields)
        except StoreConflictError as e:
            log_operation("allocate_ip", "conflict", {"address": canonical, "subnet_id": subnet.id})
            raise AlreadyOccupiedError(canonical) from e
        return record, before

    def _allocate_auto(self, subnet: Subnet, address_range: AddressRange,
                       fields: dict) -> Tuple[IPAddress, Optional[dict]]:
        if address_range.is_empty:
            raise SubnetFullError(subnet.id, subnet.cidr)

        lost: Set[int] = set()
        for attempt in range(self.max_retries + 1):
            occupied = {
                parse_address(r.address)[1] for r in self.store.find_occupied(subnet.id)
            } | lost
            reserved = self._reserved_intervals(subnet)
            value = self.find_first_free(subnet, address_range, occupied, reserved)
            candidate = format_address(value, address_range.family)

            existing = self.store.get_record_by_address(candidate)
            before = snapshot(existing)
            try:
                return self.store.upsert(candidate, fields), before
            except StoreConflictError:
                lost.add(value)
                logger.warning(
                    f"Allocation race on {candidate} in subnet {subnet.id}, "
                    f"rescanning (attempt {attempt + 1}/{self.max_retries + 1})"
                )

        log_operation("allocate_ip", "failed", {"subnet_id": subnet.id, "reason": "retries_exhausted"})
        raise AlreadyOccupiedError(candidate, details={"reason": "lost every allocation race"})

    def find_first_free(self, subnet: Subnet, address_range: AddressRange, occupied: Set[int],
                        reserved: List[Tuple[int, int]]) -> int:
        """
        Lowest address in the usable range not occupied and not reserved.

        IPv4 ranges are scanned to the end. IPv6 scans stop after
        `search_budget` candidates; running out there raises
        SearchBudgetExceededError, while reaching the end of the range raises
        SubnetFullError.
        """
        end = address_range.last_value
        if address_range.family == IPFamily.V6:
            budget = min(self.search_budget, address_range.span)
        else:
            budget = address_range.span

        candidate = address_range.first_value
        examined = 0
        while candidate <= end and examined < budget:
            # A reservation range is skipped as one step
            blocking = next((hi for lo, hi in reserved if lo <= candidate <= hi), None)
            if blocking is not None:
                candidate = blocking + 1
            elif candidate not in occupied:
                return candidate
            else:
                candidate += 1
            examined += 1

        if candidate > end:
            log_operation("allocate_ip", "failed", {"subnet_id": subnet.id, "reason": "subnet_full"})
            raise SubnetFullError(subnet.id, subnet.cidr)
        log_operation("allocate_ip", "failed", {"subnet_id": subnet.id, "reason": "search_budget"})
        raise SearchBudgetExceededError(subnet.id, subnet.cidr, self.search_budget)

    def _reserved_intervals(self, subnet: Subnet) -> List[Tuple[int, int]]:
        intervals = []
        for reservation in self.store.active_reservations(subnet.id, self.clock()):
            intervals.append((int(reservation.start_key, 16), int(reservation.end_key, 16)))
        return intervals

    def _reservation_covering(self, subnet: Subnet, value: int) -> bool:
        return any(lo <= value <= hi for lo, hi in self._reserved_intervals(subnet))

    # ------------------------------------------------------------------- release

    def release(self, record_id: int, actor: Optional[str] = None) -> IPAddress:
        """Return an address to Available and wipe its metadata. Idempotent."""
        record = self.get_record(record_id)
        if record.status == IPStatus.AVAILABLE:
            log_operation("release_ip", "success", {"id": record.id, "address": record.address, "noop": True})
            return record

        check_transition(record.status, IPStatus.AVAILABLE, Transition.RELEASE)
        before = snapshot(record)
        for name, value in cleared_metadata().items():
            setattr(record, name, value)
        record.status = IPStatus.AVAILABLE
        self.store.save_record(record)

        self._commit(HistoryAction.RELEASED, actor, before, record)
        log_operation("release_ip", "success", {"id": record.id, "address": record.address})
        return record

    # ------------------------------------------------------------ update metadata

    def update_metadata(
        self,
        record_id: int,
        metadata: Optional[dict] = None,
        status: Optional[IPStatus] = None,
        actor: Optional[str] = None,
    ) -> IPAddress:
        """
        Edit metadata and optionally move the record to another status.

        This is the only way to move between two occupied states, for example
        Reserved to Assigned. Moving to Available clears metadata like a release.
        An Available address cannot be taken out of the pool here; use allocate.
        A call that changes nothing writes no history entry.
        """
        record = self.get_record(record_id)
        fields = validate_metadata(metadata)
        target = IPStatus(status) if status is not None else IPStatus(record.status)
        check_transition(record.status, target, Transition.UPDATE)

        if target == IPStatus.AVAILABLE:
            if any(value is not None for value in fields.values()):
                raise ValidationError(
                    f"Address {record.address} is available and carries no metadata; allocate it first",
                    {"address": record.address},
                )
            fields = cleared_metadata()

        changes = {name: value for name, value in fields.items() if getattr(record, name) != value}
        if target == record.status and not changes:
            log_operation("update_ip", "success", {"id": record.id, "address": record.address, "noop": True})
            return record

        before = snapshot(record)
        record.status = target
        for name, value in changes.items():
            setattr(record, name, value)
        self.store.save_record(record)

        self._commit(HistoryAction.UPDATED, actor, before, record)
        log_operation("update_ip", "success", {"id": record.id, "address": record.address})
        return record

    # ------------------------------------------------------------------- helpers

    def _get_subnet(self, subnet_id: int) -> Subnet:
        subnet = self.store.get_subnet(subnet_id)
        if not subnet:
            log_operation("allocate_ip", "failed", {"subnet_id": subnet_id, "reason": "not_found"})
            raise ResourceNotFoundError("Subnet", subnet_id)
        return subnet

    def get_record(self, record_id: int) -> IPAddress:
        record = self.store.get_record(record_id)
        if not record:
            raise ResourceNotFoundError("IPAddress", record_id)
        return record

    def _commit(self, action: HistoryAction, actor: Optional[str], before: Optional[dict],
                record: IPAddress) -> None:
        """Write the audit entry and commit it together with the change."""
        try:
            self.audit.record(action, actor, before, snapshot(record),
                              ip_address_id=record.id, subnet_id=record.subnet_id)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        self.store.refresh(record)
