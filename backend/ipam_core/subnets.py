"""
Subnet registry: declaring subnets and reporting how full they are.
"""
from typing import List, Optional

from .codec import IPFamily, detect_family, format_address, parse_address
from .exceptions import (
    AlreadyOccupiedError,
    DuplicateResourceError,
    InvalidAddressError,
    ResourceNotFoundError,
    ValidationError,
)
from .logger import log_operation
from .models import IPAddress, Subnet
from .status import IPStatus, NON_RESERVABLE_STATUSES
from .store import RecordStore
from .subnet import compute_range, network_base, validate_prefix

SUBNET_UPDATABLE_FIELDS = (
    "network_address", "prefix_length", "description", "location", "vlan_id", "parent_subnet_id",
)


class SubnetRegistry:
    def __init__(self, store: RecordStore):
        self.store = store

    def create_subnet(
        self,
        network_address: str,
        prefix_length: int,
        family: Optional[IPFamily] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
        vlan_id: Optional[int] = None,
        parent_subnet_id: Optional[int] = None,
    ) -> Subnet:
        """
        Declare a subnet. Host bits in `network_address` are cleared, so
        192.168.1.7/24 is stored as 192.168.1.0/24.
        """
        family = IPFamily(family) if family else detect_family(network_address)
        parsed_family, value = parse_address(network_address)
        if parsed_family != family:
            raise InvalidAddressError(network_address, {"reason": f"not an {family.value} address"})
        validate_prefix(prefix_length, family)

        network = format_address(network_base(value, prefix_length, family), family)
        cidr = f"{network}/{prefix_length}"

        if self.store.find_subnet(network, prefix_length, family):
            log_operation("create_subnet", "failed", {"reason": "duplicate", "cidr": cidr})
            raise DuplicateResourceError("Subnet", cidr)

        if parent_subnet_id is not None and not self.store.get_subnet(parent_subnet_id):
            raise ResourceNotFoundError("Subnet", parent_subnet_id)

        subnet = Subnet(
            network_address=network,
            prefix_length=prefix_length,
            family=family,
            cidr=cidr,
            description=description,
            location=location,
            vlan_id=vlan_id,
            parent_subnet_id=parent_subnet_id,
        )
        self.store.add_subnet(subnet)
        self.store.commit()

        log_operation("create_subnet", "success", {"id": subnet.id, "cidr": cidr})
        return subnet

    def get_subnet(self, subnet_id: int) -> Subnet:
        subnet = self.store.get_subnet(subnet_id)
        if not subnet:
            raise ResourceNotFoundError("Subnet", subnet_id)
        return subnet

    def list_subnets(self, family: Optional[IPFamily] = None, location: Optional[str] = None,
                     vlan_id: Optional[int] = None, search: Optional[str] = None) -> List[Subnet]:
        return self.store.list_subnets(family, location, vlan_id, search)

    def update_subnet(self, subnet_id: int, changes: dict) -> Subnet:
        """
        Edit a subnet. Description, location, VLAN and parent can always
        change; the network and prefix only while the subnet holds no
        addresses, reservations or child subnets.
        """
        unknown = set(changes) - set(SUBNET_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Subnet fields cannot be changed: {', '.join(sorted(unknown))}",
                {"fields": sorted(unknown)},
            )
        subnet = self.get_subnet(subnet_id)

        if "network_address" in changes or "prefix_length" in changes:
            self._renumber(subnet, changes.get("network_address", subnet.network_address),
                           changes.get("prefix_length", subnet.prefix_length))

        if "parent_subnet_id" in changes:
            parent_id = changes["parent_subnet_id"]
            if parent_id is not None:
                self.get_subnet(parent_id)
                if parent_id == subnet.id or parent_id in self._descendant_ids(subnet.id):
                    raise ValidationError(
                        f"Subnet {parent_id} cannot be the parent of {subnet.cidr}",
                        {"parent_subnet_id": parent_id},
                    )
            subnet.parent_subnet_id = parent_id

        for name in ("description", "location", "vlan_id"):
            if name in changes:
                setattr(subnet, name, changes[name])

        self.store.save_subnet(subnet)
        self.store.commit()
        self.store.refresh(subnet)
        log_operation("update_subnet", "success", {"id": subnet.id, "fields": sorted(changes)})
        return subnet

    def _renumber(self, subnet: Subnet, network_address: str, prefix_length: int) -> None:
        family = IPFamily(subnet.family)
        parsed_family, value = parse_address(network_address)
        if parsed_family != family:
            raise InvalidAddressError(network_address, {"reason": f"not an {family.value} address"})
        validate_prefix(prefix_length, family)
        network = format_address(network_base(value, prefix_length, family), family)
        if network == subnet.network_address and prefix_length == subnet.prefix_length:
            return

        records = self.store.list_records(subnet.id)
        reservations = self.store.list_reservations(subnet.id)
        children = self.store.list_child_subnets(subnet.id)
        if records or reservations or children:
            log_operation("update_subnet", "failed", {"id": subnet.id, "reason": "in_use"})
            raise AlreadyOccupiedError(subnet.cidr, details={
                "addresses": len(records), "reservations": len(reservations), "children": len(children),
            })

        cidr = f"{network}/{prefix_length}"
        if self.store.find_subnet(network, prefix_length, family):
            log_operation("update_subnet", "failed", {"reason": "duplicate", "cidr": cidr})
            raise DuplicateResourceError("Subnet", cidr)
        subnet.network_address = network
        subnet.prefix_length = prefix_length
        subnet.cidr = cidr

    def _descendant_ids(self, subnet_id: int) -> set:
        found = set()
        pending = [subnet_id]
        while pending:
            for child in self.store.list_child_subnets(pending.pop()):
                if child.id not in found:
                    found.add(child.id)
                    pending.append(child.id)
        return found

    def delete_subnet(self, subnet_id: int) -> None:
        """Refused while any address is occupied, a reservation exists or child subnets remain."""
        subnet = self.get_subnet(subnet_id)
        children = self.store.list_child_subnets(subnet.id)
        if children:
            log_operation("delete_subnet", "failed", {"id": subnet_id, "reason": "has_children"})
            raise AlreadyOccupiedError(subnet.cidr, details={
                "children": [child.cidr for child in children],
            })
        counts = self.store.count_by_status(subnet.id)
        occupied = sum(count for status, count in counts.items() if status != IPStatus.AVAILABLE)
        reservations = self.store.list_reservations(subnet.id)
        if occupied or reservations:
            log_operation("delete_subnet", "failed", {"id": subnet_id, "reason": "in_use"})
            raise AlreadyOccupiedError(subnet.cidr, details={
                "occupied": occupied, "reservations": len(reservations),
            })

        self.store.delete_subnet(subnet)
        self.store.commit()
        log_operation("delete_subnet", "success", {"id": subnet_id})

    def list_addresses(self, subnet_id: int, status: Optional[IPStatus] = None) -> List[IPAddress]:
        subnet = self.get_subnet(subnet_id)
        return self.store.list_records(subnet.id, IPStatus(status) if status else None)

    def utilization(self, subnet_id: int) -> dict:
        subnet = self.get_subnet(subnet_id)
        return self._utilization(subnet)

    def _utilization(self, subnet: Subnet) -> dict:
        address_range = compute_range(subnet.network_address, subnet.prefix_length, subnet.family)
        counts = self.store.count_by_status(subnet.id)
        used = sum(counts[status] for status in NON_RESERVABLE_STATUSES)
        reserved = counts[IPStatus.RESERVED]
        total = address_range.usable_count
        available = max(0, total - used - reserved)
        percent = round((used + reserved) / total * 100, 2) if total else 0.0
        return {
            "subnet_id": subnet.id,
            "cidr": subnet.cidr,
            "family": IPFamily(subnet.family).value,
            "total": total,
            "saturated": address_range.saturated,
            "used": used,
            "reserved": reserved,
            "available": available,
            "utilization_percent": percent,
            "by_status": {status.value: count for status, count in counts.items()},
        }

    def utilization_report(self) -> dict:
        """Per-subnet utilization plus totals per address family."""
        subnets = [self._utilization(subnet) for subnet in self.store.list_subnets()]
        totals = {}
        for family in IPFamily:
            rows = [row for row in subnets if row["family"] == family.value]
            totals[family.value] = {
                "subnets": len(rows),
                "used": sum(row["used"] for row in rows),
                "reserved": sum(row["reserved"] for row in rows),
            }
        return {"subnets": subnets, "totals": totals}

    def search_addresses(self, subnet_id: Optional[int] = None, status: Optional[IPStatus] = None,
                         search: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[IPAddress]:
        """Address records across every subnet, newest first."""
        if subnet_id is not None:
            self.get_subnet(subnet_id)
        return self.store.search_records(subnet_id, IPStatus(status) if status else None,
                                         search, limit, offset)

    def status_report(self) -> dict:
        """How many address records sit in each status, over all subnets."""
        counts = self.store.count_by_status()
        return {"total": sum(counts.values()),
                "by_status": {status.value: count for status, count in counts.items()}}
