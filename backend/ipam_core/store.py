"""
Record store used by the allocation engine.

`RecordStore` is the contract the engine is written against; `SQLModelStore`
implements it over a single SQLModel session. Mutating methods only flush;
the engine commits once the matching audit entry has been written, so a
state change and its history row land together.

Address uniqueness is global, and subnets may nest, so occupancy and
reservation queries cover every subnet of the same family whose records fall
inside the requested block, not only records owned by one subnet id.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from .codec import IPFamily, address_key, parse_address
from .exceptions import DuplicateResourceError, ResourceNotFoundError, StoreConflictError
from .logger import log_database_operation
from .models import IPAddress, Reservation, Subnet, utcnow
from .status import OCCUPIED_STATUSES, IPStatus, cleared_metadata
from .subnet import network_bounds

# Keeps IN (...) lists under SQLite's bound-parameter limit
_IN_CHUNK = 500


class RecordStore(ABC):
    """Persistence contract for subnets, address records and reservations."""

    # --- subnets ---
    @abstractmethod
    def get_subnet(self, subnet_id: int) -> Optional[Subnet]: ...

    @abstractmethod
    def find_subnet(self, network_address: str, prefix_length: int, family: IPFamily) -> Optional[Subnet]: ...

    @abstractmethod
    def add_subnet(self, subnet: Subnet) -> Subnet: ...

    @abstractmethod
    def save_subnet(self, subnet: Subnet) -> Subnet: ...

    @abstractmethod
    def list_subnets(self, family: IPFamily = None, location: str = None,
                     vlan_id: int = None, search: str = None) -> List[Subnet]: ...

    @abstractmethod
    def delete_subnet(self, subnet: Subnet) -> None: ...

    @abstractmethod
    def list_child_subnets(self, subnet_id: int) -> List[Subnet]: ...

    # --- address records ---
    @abstractmethod
    def get_record(self, record_id: int) -> Optional[IPAddress]: ...

    @abstractmethod
    def get_record_by_address(self, address: str) -> Optional[IPAddress]: ...

    @abstractmethod
    def list_records(self, subnet_id: int, status: IPStatus = None) -> List[IPAddress]: ...

    @abstractmethod
    def search_records(self, subnet_id: int = None, status: IPStatus = None, search: str = None,
                       limit: int = 100, offset: int = 0) -> List[IPAddress]: ...

    @abstractmethod
    def count_by_status(self, subnet_id: int = None) -> Dict[IPStatus, int]:
        """Record counts per status for one subnet, or for every subnet when None."""

    @abstractmethod
    def find_occupied(self, subnet_id: int, addresses: Iterable[str] = None) -> List[IPAddress]:
        """
        Occupied records inside the subnet's block, optionally limited to `addresses`.

        Records owned by nested subnets of the same family count too.
        """

    @abstractmethod
    def find_in_range(self, subnet_id: int, start: int, end: int,
                      statuses: Iterable[IPStatus] = None) -> List[IPAddress]:
        """Records of the subnet's family whose value lies in [start, end], ordered numerically."""

    @abstractmethod
    def upsert(self, address: str, fields: dict) -> IPAddress:
        """
        Claim `address`: insert it, or update it if it is currently Available.

        Raises StoreConflictError when another writer holds the address.
        """

    @abstractmethod
    def save_record(self, record: IPAddress) -> IPAddress: ...

    @abstractmethod
    def materialize(self, subnet_id: int, addresses: List[str], fields: dict) -> int:
        """
        Write `fields` onto each address that is absent or Available.

        Addresses already in another status are left untouched. Returns the
        number of records written.
        """

    @abstractmethod
    def bulk_transition(self, subnet_id: int, start: int, end: int,
                        from_status: IPStatus, to_status: IPStatus) -> int:
        """Move every record of the subnet's family in [start, end] from one status to another."""

    # --- reservations ---
    @abstractmethod
    def get_reservation(self, reservation_id: int) -> Optional[Reservation]: ...

    @abstractmethod
    def add_reservation(self, reservation: Reservation) -> Reservation: ...

    @abstractmethod
    def remove_reservation(self, reservation: Reservation) -> None: ...

    @abstractmethod
    def list_reservations(self, subnet_id: int = None, search: str = None) -> List[Reservation]: ...

    @abstractmethod
    def active_reservations(self, subnet_id: int, now: datetime) -> List[Reservation]:
        """Unexpired reservations of the same family overlapping the subnet's block."""

    @abstractmethod
    def expired_reservations(self, now: datetime) -> List[Reservation]: ...

    # --- unit of work ---
    @abstractmethod
    def commit(self) -> None: ...

    @abstractmethod
    def rollback(self) -> None: ...

    @abstractmethod
    def refresh(self, obj) -> None:
        """Reload an object's attributes after a commit expired them."""


class SQLModelStore(RecordStore):
    def __init__(self, session: Session):
        self.session = session

    # ------------------------------------------------------------------ subnets

    def get_subnet(self, subnet_id: int) -> Optional[Subnet]:
        return self.session.get(Subnet, subnet_id)

    def find_subnet(self, network_address: str, prefix_length: int, family: IPFamily) -> Optional[Subnet]:
        return self.session.exec(
            select(Subnet).where(
                Subnet.network_address == network_address,
                Subnet.prefix_length == prefix_length,
                Subnet.family == family,
            )
        ).first()

    def add_subnet(self, subnet: Subnet) -> Subnet:
        self.session.add(subnet)
        try:
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateResourceError("Subnet", subnet.cidr) from e
        log_database_operation("CREATE", "Subnet", "success", details={"cidr": subnet.cidr})
        return subnet

    def save_subnet(self, subnet: Subnet) -> Subnet:
        subnet.updated_at = utcnow()
        self.session.add(subnet)
        try:
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateResourceError("Subnet", subnet.cidr) from e
        log_database_operation("UPDATE", "Subnet", "success", details={"id": subnet.id, "cidr": subnet.cidr})
        return subnet

    def list_subnets(self, family: IPFamily = None, location: str = None,
                     vlan_id: int = None, search: str = None) -> List[Subnet]:
        query = select(Subnet)
        if family:
            query = query.where(Subnet.family == family)
        if location:
            query = query.where(col(Subnet.location).contains(location))
        if vlan_id is not None:
            query = query.where(Subnet.vlan_id == vlan_id)
        if search:
            query = query.where(
                (col(Subnet.cidr).contains(search)) |
                (col(Subnet.description).contains(search)) |
                (col(Subnet.location).contains(search))
            )
        subnets = self.session.exec(query.order_by(Subnet.id)).all()
        log_database_operation("READ", "Subnet", "success", count=len(subnets))
        return list(subnets)

    def delete_subnet(self, subnet: Subnet) -> None:
        # Only Available rows remain by the time a subnet can be deleted
        records = self.session.exec(select(IPAddress).where(IPAddress.subnet_id == subnet.id)).all()
        for record in records:
            self.session.delete(record)
        self.session.delete(subnet)
        self.session.flush()
        log_database_operation("DELETE", "Subnet", "success", details={"id": subnet.id}, count=len(records))

    def list_child_subnets(self, subnet_id: int) -> List[Subnet]:
        return list(self.session.exec(
            select(Subnet).where(Subnet.parent_subnet_id == subnet_id).order_by(Subnet.id)
        ).all())

    def _block(self, subnet_id: int) -> Tuple[IPFamily, int, int]:
        """Family and full numeric extent of a subnet."""
        subnet = self.get_subnet(subnet_id)
        if subnet is None:
            raise ResourceNotFoundError("Subnet", subnet_id)
        family = IPFamily(subnet.family)
        start, end = network_bounds(subnet.network_address, subnet.prefix_length, family)
        return family, start, end

    def _family_subnet_ids(self, family: IPFamily):
        return select(Subnet.id).where(Subnet.family == family)

    # ---------------------------------------------------------- address records

    def get_record(self, record_id: int) -> Optional[IPAddress]:
        return self.session.get(IPAddress, record_id)

    def get_record_by_address(self, address: str) -> Optional[IPAddress]:
        return self.session.exec(select(IPAddress).where(IPAddress.address == address)).first()

    def list_records(self, subnet_id: int, status: IPStatus = None) -> List[IPAddress]:
        query = select(IPAddress).where(IPAddress.subnet_id == subnet_id)
        if status:
            query = query.where(IPAddress.status == status)
        records = self.session.exec(query.order_by(IPAddress.address_key)).all()
        log_database_operation("READ", "IPAddress", "success", count=len(records))
        return list(records)

    def search_records(self, subnet_id: int = None, status: IPStatus = None, search: str = None,
                       limit: int = 100, offset: int = 0) -> List[IPAddress]:
        query = select(IPAddress)
        if subnet_id is not None:
            query = query.where(IPAddress.subnet_id == subnet_id)
        if status:
            query = query.where(IPAddress.status == status)
        if search:
            query = query.where(
                (col(IPAddress.address).icontains(search)) |
                (col(IPAddress.hostname).icontains(search)) |
                (col(IPAddress.mac_address).icontains(search)) |
                (col(IPAddress.device_name).icontains(search)) |
                (col(IPAddress.assigned_to).icontains(search))
            )
        records = self.session.exec(
            query.order_by(col(IPAddress.created_at).desc(), col(IPAddress.id).desc())
            .offset(offset).limit(limit)
        ).all()
        log_database_operation("READ", "IPAddress", "success", count=len(records))
        return list(records)

    def count_by_status(self, subnet_id: int = None) -> Dict[IPStatus, int]:
        query = select(IPAddress.status, func.count(IPAddress.id))
        if subnet_id is not None:
            query = query.where(IPAddress.subnet_id == subnet_id)
        rows = self.session.exec(query.group_by(IPAddress.status)).all()
        counts = {status: 0 for status in IPStatus}
        for status, count in rows:
            counts[IPStatus(status)] = count
        return counts

    def find_occupied(self, subnet_id: int, addresses: Iterable[str] = None) -> List[IPAddress]:
        family, start, end = self._block(subnet_id)
        query = select(IPAddress).where(
            col(IPAddress.subnet_id).in_(self._family_subnet_ids(family)),
            col(IPAddress.address_key).between(address_key(start), address_key(end)),
            col(IPAddress.status).in_(OCCUPIED_STATUSES),
        )
        if addresses is None:
            return list(self.session.exec(query.order_by(IPAddress.address_key)).all())

        addresses = list(addresses)
        found = []
        for i in range(0, len(addresses), _IN_CHUNK):
            chunk = addresses[i:i + _IN_CHUNK]
            found.extend(self.session.exec(query.where(col(IPAddress.address).in_(chunk))).all())
        return found

    def find_in_range(self, subnet_id: int, start: int, end: int,
                      statuses: Iterable[IPStatus] = None) -> List[IPAddress]:
        family, _, _ = self._block(subnet_id)
        query = select(IPAddress).where(
            col(IPAddress.subnet_id).in_(self._family_subnet_ids(family)),
            col(IPAddress.address_key).between(address_key(start), address_key(end)),
        )
        if statuses is not None:
            query = query.where(col(IPAddress.status).in_(list(statuses)))
        return list(self.session.exec(query.order_by(IPAddress.address_key)).all())

    def upsert(self, address: str, fields: dict) -> IPAddress:
        existing = self.get_record_by_address(address)
        if existing is None:
            return self._insert(address, fields)
        return self._claim(existing, fields)

    def _insert(self, address: str, fields: dict) -> IPAddress:
        _, value = parse_address(address)
        record = IPAddress(address=address, address_key=address_key(value), **fields)
        self.session.add(record)
        try:
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            log_database_operation("CREATE", "IPAddress", "conflict", details={"address": address})
            raise StoreConflictError(address) from e
        log_database_operation("CREATE", "IPAddress", "success", details={"address": address})
        return record

    def _claim(self, record: IPAddress, fields: dict) -> IPAddress:
        """Conditional update: only succeeds while the row is still Available."""
        stmt = (
            update(IPAddress)
            .where(col(IPAddress.id) == record.id, col(IPAddress.status) == IPStatus.AVAILABLE)
            .values(**fields, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            self.session.rollback()
            log_database_operation("UPDATE", "IPAddress", "conflict", details={"address": record.address})
            raise StoreConflictError(record.address)
        self.session.refresh(record)
        log_database_operation("UPDATE", "IPAddress", "success", details={"address": record.address})
        return record

    def save_record(self, record: IPAddress) -> IPAddress:
        record.updated_at = utcnow()
        self.session.add(record)
        self.session.flush()
        return record

    def materialize(self, subnet_id: int, addresses: List[str], fields: dict) -> int:
        existing = {}
        for i in range(0, len(addresses), _IN_CHUNK):
            chunk = addresses[i:i + _IN_CHUNK]
            for record in self.session.exec(select(IPAddress).where(col(IPAddress.address).in_(chunk))).all():
                existing[record.address] = record

        written = 0
        for address in addresses:
            record = existing.get(address)
            if record is None:
                _, value = parse_address(address)
                self.session.add(IPAddress(
                    address=address,
                    address_key=address_key(value),
                    subnet_id=subnet_id,
                    **fields,
                ))
            elif record.status == IPStatus.AVAILABLE:
                for name, value in fields.items():
                    setattr(record, name, value)
                record.subnet_id = subnet_id
                record.updated_at = utcnow()
                self.session.add(record)
            else:
                continue
            written += 1

        try:
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            log_database_operation("CREATE", "IPAddress", "conflict", details={"subnet_id": subnet_id})
            raise StoreConflictError(addresses[0] if addresses else "") from e

        log_database_operation("CREATE", "IPAddress", "success", details={"subnet_id": subnet_id}, count=written)
        return written

    def bulk_transition(self, subnet_id: int, start: int, end: int,
                        from_status: IPStatus, to_status: IPStatus) -> int:
        family, _, _ = self._block(subnet_id)
        values = {"status": to_status, "updated_at": utcnow()}
        if to_status == IPStatus.AVAILABLE:
            values.update(cleared_metadata())

        stmt = (
            update(IPAddress)
            .where(
                col(IPAddress.subnet_id).in_(self._family_subnet_ids(family)),
                col(IPAddress.address_key).between(address_key(start), address_key(end)),
                col(IPAddress.status) == from_status,
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        count = self.session.execute(stmt).rowcount
        log_database_operation(
            "UPDATE", "IPAddress", "success",
            details={"subnet_id": subnet_id, "from": from_status.value, "to": to_status.value},
            count=count,
        )
        return count

    # ------------------------------------------------------------- reservations

    def get_reservation(self, reservation_id: int) -> Optional[Reservation]:
        return self.session.get(Reservation, reservation_id)

    def add_reservation(self, reservation: Reservation) -> Reservation:
        self.session.add(reservation)
        self.session.flush()
        return reservation

    def remove_reservation(self, reservation: Reservation) -> None:
        self.session.delete(reservation)
        self.session.flush()

    def list_reservations(self, subnet_id: int = None, search: str = None) -> List[Reservation]:
        query = select(Reservation)
        if subnet_id is not None:
            query = query.where(Reservation.subnet_id == subnet_id)
        if search:
            query = query.where(
                (col(Reservation.purpose).contains(search)) |
                (col(Reservation.reserved_by).contains(search)) |
                (col(Reservation.start_ip).contains(search)) |
                (col(Reservation.end_ip).contains(search))
            )
        reservations = self.session.exec(query.order_by(col(Reservation.created_at).desc())).all()
        log_database_operation("READ", "Reservation", "success", count=len(reservations))
        return list(reservations)

    def active_reservations(self, subnet_id: int, now: datetime) -> List[Reservation]:
        family, start, end = self._block(subnet_id)
        return list(self.session.exec(
            select(Reservation)
            .where(
                col(Reservation.subnet_id).in_(self._family_subnet_ids(family)),
                col(Reservation.start_key) <= address_key(end),
                col(Reservation.end_key) >= address_key(start),
                or_(col(Reservation.expires_at).is_(None), col(Reservation.expires_at) > now),
            )
            .order_by(Reservation.start_key)
        ).all())

    def expired_reservations(self, now: datetime) -> List[Reservation]:
        return list(self.session.exec(
            select(Reservation).where(
                col(Reservation.expires_at).is_not(None),
                col(Reservation.expires_at) <= now,
            )
        ).all())

    # ------------------------------------------------------------- unit of work

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def refresh(self, obj) -> None:
        self.session.refresh(obj)
