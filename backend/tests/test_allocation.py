"""Tests for the allocation engine."""
import pytest

from ipam_core.allocation import AllocationEngine
from ipam_core.audit import HistoryAction
from ipam_core.codec import address_key, parse_address
from ipam_core.exceptions import (
    AlreadyOccupiedError,
    FamilyMismatchError,
    InvalidAddressError,
    InvalidTransitionError,
    OutOfRangeError,
    ResourceNotFoundError,
    SearchBudgetExceededError,
    SubnetFullError,
    ValidationError,
)
from ipam_core.models import IPAddress
from ipam_core.reservations import ReservationManager
from ipam_core.status import IPStatus
from ipam_core.store import SQLModelStore


class RacingStore(SQLModelStore):
    """Lets a competing writer claim the candidate just before our insert lands."""

    def __init__(self, session, races=1):
        super().__init__(session)
        self.races = races
        self.raced = []

    def _insert(self, address, fields):
        if self.races:
            self.races -= 1
            self.raced.append(address)
            competitor = IPAddress(
                address=address,
                address_key=address_key(parse_address(address)[1]),
                subnet_id=fields["subnet_id"],
                status=IPStatus.ASSIGNED,
                hostname="competitor",
            )
            self.session.add(competitor)
            self.session.commit()
        return super()._insert(address, fields)


class TestAutomatic:

    def test_first_address(self, allocator, v4_subnet):
        record = allocator.allocate(v4_subnet.id)
        assert record.address == "192.168.1.1"
        assert record.status == IPStatus.ASSIGNED

    def test_first_gap(self, allocator, v4_subnet):
        for address in ("192.168.1.1", "192.168.1.5", "192.168.1.10"):
            allocator.allocate(v4_subnet.id, address)
        assert allocator.allocate(v4_subnet.id).address == "192.168.1.2"

    def test_sequential_allocations_are_unique(self, allocator, v4_subnet):
        addresses = [allocator.allocate(v4_subnet.id).address for _ in range(5)]
        assert addresses == [f"192.168.1.{i}" for i in range(1, 6)]

    def test_reuses_released_address(self, allocator, v4_subnet):
        first = allocator.allocate(v4_subnet.id)
        allocator.allocate(v4_subnet.id)
        allocator.release(first.id)
        again = allocator.allocate(v4_subnet.id)
        assert again.address == "192.168.1.1"
        assert again.id == first.id

    def test_subnet_full(self, registry, allocator):
        subnet = registry.create_subnet("10.0.0.0", 30)
        allocator.allocate(subnet.id)
        allocator.allocate(subnet.id)
        with pytest.raises(SubnetFullError):
            allocator.allocate(subnet.id)

    def test_slash_31_has_nothing_to_give(self, registry, allocator):
        subnet = registry.create_subnet("10.0.0.0", 31)
        with pytest.raises(SubnetFullError):
            allocator.allocate(subnet.id)

    def test_v6(self, allocator, v6_subnet):
        assert allocator.allocate(v6_subnet.id).address == "2001:db8::1"
        assert allocator.allocate(v6_subnet.id).address == "2001:db8::2"

    def test_v6_search_budget(self, store, recorder, v6_subnet):
        engine = AllocationEngine(store, recorder, search_budget=3)
        for _ in range(3):
            engine.allocate(v6_subnet.id)
        with pytest.raises(SearchBudgetExceededError):
            engine.allocate(v6_subnet.id)

    def test_small_v6_subnet_reports_full_not_budget(self, registry, store, recorder):
        subnet = registry.create_subnet("2001:db8::", 126)
        engine = AllocationEngine(store, recorder, search_budget=1000)
        for _ in range(3):
            engine.allocate(subnet.id)
        with pytest.raises(SubnetFullError):
            engine.allocate(subnet.id)

    def test_skips_active_reservation_range(self, allocator, reservations, v4_subnet):
        allocator.allocate(v4_subnet.id, "192.168.1.1")
        reservations.create_reservation(v4_subnet.id, "192.168.1.2", "192.168.1.50")
        assert allocator.allocate(v4_subnet.id).address == "192.168.1.51"

    def test_skips_unmaterialized_reserved_addresses(self, store, recorder, v6_subnet):
        manager = ReservationManager(store, recorder, materialize_limit=2)
        manager.create_reservation(v6_subnet.id, "2001:db8::1", "2001:db8::ffff")
        assert len(store.find_occupied(v6_subnet.id)) == 2

        engine = AllocationEngine(store, recorder, search_budget=5)
        assert engine.allocate(v6_subnet.id).address == "2001:db8::1:0"

    def test_unknown_subnet(self, allocator):
        with pytest.raises(ResourceNotFoundError):
            allocator.allocate(999)


class TestManual:

    def test_assigns_requested_address_with_metadata(self, allocator, v4_subnet):
        record = allocator.allocate(v4_subnet.id, "192.168.1.20", {
            "hostname": "db-1", "mac_address": "AA:BB:CC:DD:EE:FF", "assigned_to": "ops",
        })
        assert record.address == "192.168.1.20"
        assert record.hostname == "db-1"
        assert record.mac_address == "AA:BB:CC:DD:EE:FF"

    def test_custom_status(self, allocator, v4_subnet):
        record = allocator.allocate(v4_subnet.id, "192.168.1.20", status=IPStatus.DHCP_MANAGED)
        assert record.status == IPStatus.DHCP_MANAGED

    def test_v6_spellings_collide(self, allocator, v6_subnet):
        record = allocator.allocate(v6_subnet.id, "2001:0db8:0000:0000:0000:0000:0000:0010")
        assert record.address == "2001:db8::10"
        with pytest.raises(AlreadyOccupiedError):
            allocator.allocate(v6_subnet.id, "2001:db8::10")

    def test_already_occupied(self, allocator, v4_subnet):
        allocator.allocate(v4_subnet.id, "192.168.1.20")
        with pytest.raises(AlreadyOccupiedError):
            allocator.allocate(v4_subnet.id, "192.168.1.20")

    def test_available_record_is_reclaimed(self, allocator, v4_subnet):
        first = allocator.allocate(v4_subnet.id, "192.168.1.20")
        allocator.release(first.id)
        again = allocator.allocate(v4_subnet.id, "192.168.1.20", {"hostname": "new"})
        assert again.id == first.id
        assert again.hostname == "new"

    def test_invalid_format(self, allocator, v4_subnet):
        with pytest.raises(InvalidAddressError):
            allocator.allocate(v4_subnet.id, "192.168.1.300")

    def test_family_mismatch(self, allocator, v4_subnet):
        with pytest.raises(FamilyMismatchError):
            allocator.allocate(v4_subnet.id, "2001:db8::1")

    @pytest.mark.parametrize("address", ["192.168.2.1", "192.168.1.0", "192.168.1.255"])
    def test_out_of_range(self, allocator, v4_subnet, address):
        with pytest.raises(OutOfRangeError):
            allocator.allocate(v4_subnet.id, address)

    def test_inside_reservation_refused(self, allocator, reservations, v4_subnet):
        reservations.create_reservation(v4_subnet.id, "192.168.1.100", "192.168.1.150")
        with pytest.raises(AlreadyOccupiedError):
            allocator.allocate(v4_subnet.id, "192.168.1.120")

    def test_bad_mac(self, allocator, v4_subnet):
        with pytest.raises(InvalidAddressError):
            allocator.allocate(v4_subnet.id, "192.168.1.20", {"mac_address": "not-a-mac"})

    def test_unknown_metadata_field(self, allocator, v4_subnet):
        with pytest.raises(ValidationError):
            allocator.allocate(v4_subnet.id, "192.168.1.20", {"owner": "x"})

    def test_cannot_allocate_as_available(self, allocator, v4_subnet):
        with pytest.raises(InvalidTransitionError):
            allocator.allocate(v4_subnet.id, "192.168.1.20", status=IPStatus.AVAILABLE)


class TestConcurrency:

    def test_lost_race_rescans(self, session, recorder, v4_subnet):
        store = RacingStore(session)
        engine = AllocationEngine(store, recorder)
        record = engine.allocate(v4_subnet.id)
        assert store.raced == ["192.168.1.1"]
        assert record.address == "192.168.1.2"

    def test_one_free_address_two_callers(self, session, registry, allocator, recorder):
        subnet = registry.create_subnet("10.0.0.0", 30)
        allocator.allocate(subnet.id, "10.0.0.1")
        store = RacingStore(session)
        engine = AllocationEngine(store, recorder)

        # The competitor takes 10.0.0.2 first; nothing is left for us
        with pytest.raises(SubnetFullError):
            engine.allocate(subnet.id)

        records = store.list_records(subnet.id)
        assert [(r.address, r.hostname) for r in records] == [("10.0.0.1", None), ("10.0.0.2", "competitor")]

    def test_retries_are_bounded(self, session, recorder, v4_subnet):
        store = RacingStore(session, races=10)
        engine = AllocationEngine(store, recorder, max_retries=2)
        with pytest.raises(AlreadyOccupiedError):
            engine.allocate(v4_subnet.id)
        assert len(store.raced) == 3

    def test_manual_lost_race(self, session, recorder, v4_subnet):
        store = RacingStore(session)
        engine = AllocationEngine(store, recorder)
        with pytest.raises(AlreadyOccupiedError):
            engine.allocate(v4_subnet.id, "192.168.1.20")


class TestRelease:

    def test_clears_metadata(self, allocator, v4_subnet):
        record = allocator.allocate(v4_subnet.id, "192.168.1.20", {
            "hostname": "db-1", "mac_address": "aa-bb-cc-dd-ee-ff", "device_name": "rack1",
            "assigned_to": "ops", "description": "primary",
        })
        released = allocator.release(record.id)
        assert released.status == IPStatus.AVAILABLE
        for field in ("hostname", "mac_address", "device_name", "assigned_to", "description"):
            assert getattr(released, field) is None

    def test_release_available_is_noop(self, allocator, recorder, v4_subnet):
        record = allocator.allocate(v4_subnet.id)
        allocator.release(record.id)
        before = len(recorder.list_history())
        again = allocator.release(record.id)
        assert again.status == IPStatus.AVAILABLE
        assert len(recorder.list_history()) == before

    def test_release_unknown(self, allocator):
        with pytest.raises(ResourceNotFoundError):
            allocator.release(42)


class TestUpdateMetadata:

    def test_updates_fields(self, allocator, v4_subnet):
        record = allocator.allocate(v4_subnet.id)
        updated = allocator.update_metadata(record.id, {"hostname": "renamed"})
        assert updated.hostname == "renamed"
        assert updated.status == IPStatus.ASSIGNED

    def test_moves_between_occupied_states(self, allocator, v4_subnet):
        record = allocator.allocate(v4_subnet.id)
        updated = allocator.update_metadata(record.id, status=IPStatus.DHCP_MANAGED)
        assert updated.status == IPStatus.DHCP_MANAGED

    def test_to_available_clears_metadata(self, allocator, v4_subnet):
        record = allocator.allocate(v4_subnet.id, metadata={"hostname": "x"})
        updated = allocator.update_metadata(record.id, status=IPStatus.AVAILABLE)
        assert updated.hostname is None

    def test_unknown_record(self, allocator):
        with pytest.raises(ResourceNotFoundError):
            allocator.update_metadata(42, {"hostname": "x"})

    def test_available_record_cannot_be_occupied_by_update(self, allocator, v4_subnet):
        record = allocator.allocate(v4_subnet.id)
        allocator.release(record.id)
        with pytest.raises(InvalidTransitionError):
            allocator.update_metadata(record.id, {"hostname": "sneaky"}, status=IPStatus.ASSIGNED)
        assert allocator.get_record(record.id).status == IPStatus.AVAILABLE

    def test_metadata_on_available_record_refused(self, allocator, recorder, v4_subnet):
        record = allocator.allocate(v4_subnet.id)
        allocator.release(record.id)
        with pytest.raises(ValidationError):
            allocator.update_metadata(record.id, {"hostname": "ghost"})
        assert allocator.get_record(record.id).hostname is None
        assert len(recorder.list_history(ip_address_id=record.id)) == 2

    def test_unchanged_update_writes_no_history(self, allocator, recorder, v4_subnet):
        record = allocator.allocate(v4_subnet.id, metadata={"hostname": "same"})
        allocator.update_metadata(record.id, {"hostname": "same"})
        allocator.update_metadata(record.id, status=IPStatus.ASSIGNED)
        entries = recorder.list_history(ip_address_id=record.id)
        assert [e.action for e in entries] == [HistoryAction.ASSIGNED.value]

    def test_get_record(self, allocator, v4_subnet):
        record = allocator.allocate(v4_subnet.id)
        assert allocator.get_record(record.id).address == "192.168.1.1"
        with pytest.raises(ResourceNotFoundError):
            allocator.get_record(999)


class TestAudit:

    def test_one_entry_per_mutation(self, allocator, recorder, v4_subnet):
        record = allocator.allocate(v4_subnet.id, metadata={"hostname": "a"})
        allocator.update_metadata(record.id, {"hostname": "b"}, actor="alice")
        allocator.release(record.id)

        entries = recorder.list_history(ip_address_id=record.id)
        assert [e.action for e in entries] == [
            HistoryAction.RELEASED.value, HistoryAction.UPDATED.value, HistoryAction.ASSIGNED.value,
        ]
        assigned = entries[-1]
        assert assigned.before is None
        assert assigned.after["address"] == "192.168.1.1"
        assert assigned.actor == "system"
        assert entries[1].actor == "alice"
        assert entries[1].before["hostname"] == "a"
        assert entries[1].after["hostname"] == "b"

    def test_failed_allocation_writes_nothing(self, allocator, recorder, v4_subnet):
        with pytest.raises(OutOfRangeError):
            allocator.allocate(v4_subnet.id, "10.0.0.1")
        assert recorder.list_history() == []


class TestNestedSubnets:

    @pytest.fixture
    def parent(self, registry):
        return registry.create_subnet("10.0.0.0", 16, description="Campus")

    @pytest.fixture
    def child(self, registry, parent):
        return registry.create_subnet("10.0.0.0", 24, parent_subnet_id=parent.id)

    def test_parent_skips_addresses_held_by_child(self, allocator, parent, child):
        for _ in range(5):
            allocator.allocate(child.id)
        record = allocator.allocate(parent.id)
        assert record.address == "10.0.0.6"
        assert record.subnet_id == parent.id

    def test_child_skips_addresses_held_by_parent(self, allocator, parent, child):
        allocator.allocate(parent.id, "10.0.0.1")
        assert allocator.allocate(child.id).address == "10.0.0.2"

    def test_manual_allocation_in_parent_sees_child_record(self, allocator, parent, child):
        allocator.allocate(child.id, "10.0.0.9")
        with pytest.raises(AlreadyOccupiedError):
            allocator.allocate(parent.id, "10.0.0.9")

    def test_child_reservation_blocks_parent(self, store, recorder, allocator, parent, child):
        # Only the first address gets a row; the rest is held by the range alone
        ReservationManager(store, recorder, materialize_limit=1).create_reservation(
            child.id, "10.0.0.1", "10.0.0.20")
        assert allocator.allocate(parent.id).address == "10.0.0.21"

    def test_other_family_with_same_key_is_ignored(self, registry, allocator):
        v4 = registry.create_subnet("10.0.0.0", 24)
        v6 = registry.create_subnet("::", 96)
        # ::a00:1 has the same numeric value as 10.0.0.1
        allocator.allocate(v6.id, "::a00:1")
        assert allocator.allocate(v4.id).address == "10.0.0.1"
