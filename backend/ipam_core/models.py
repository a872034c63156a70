from typing import Optional
from datetime import datetime, timezone

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field, Column, JSON

from .codec import IPFamily
from .status import IPStatus


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# --- Subnet ---
class SubnetBase(SQLModel):
    network_address: str = Field(index=True)
    prefix_length: int
    family: IPFamily = Field(default=IPFamily.V4)
    cidr: str = Field(index=True)
    description: Optional[str] = None
    location: Optional[str] = Field(default=None)
    vlan_id: Optional[int] = Field(default=None)
    parent_subnet_id: Optional[int] = Field(default=None, foreign_key="subnet.id")


class Subnet(SubnetBase, table=True):
    __table_args__ = (
        UniqueConstraint("network_address", "prefix_length", "family", name="uq_subnet_network"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# --- IP ---
class IPAddressBase(SQLModel):
    subnet_id: int = Field(foreign_key="subnet.id", index=True)
    # Canonical text; the unique key every allocation races on
    address: str = Field(index=True, unique=True)
    status: IPStatus = Field(default=IPStatus.AVAILABLE, index=True)
    hostname: Optional[str] = None
    mac_address: Optional[str] = None
    device_name: Optional[str] = None
    assigned_to: Optional[str] = None
    description: Optional[str] = None


class IPAddress(IPAddressBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    # 32 hex digits, see codec.address_key
    address_key: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# --- Reservation ---
class ReservationBase(SQLModel):
    subnet_id: int = Field(foreign_key="subnet.id", index=True)
    start_ip: str
    end_ip: str
    purpose: Optional[str] = None
    reserved_by: Optional[str] = None
    expires_at: Optional[datetime] = None


class Reservation(ReservationBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    start_key: str = Field(index=True)
    end_key: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_active(self, now: datetime = None) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utcnow())


# --- History ---
class IPHistory(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    action: str = Field(index=True)
    actor: str = Field(default="system")
    ip_address_id: Optional[int] = Field(default=None, index=True)
    reservation_id: Optional[int] = Field(default=None, index=True)
    subnet_id: Optional[int] = Field(default=None, index=True)
    before: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    after: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)
