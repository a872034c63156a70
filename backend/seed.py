"""
Seed a database with demo subnets, allocations and a reservation.

    python seed.py
"""
from sqlmodel import Session

from ipam_core.allocation import AllocationEngine
from ipam_core.audit import HistoryRecorder
from ipam_core.codec import IPFamily
from ipam_core.database import create_db_and_tables, engine
from ipam_core.logger import logger
from ipam_core.reservations import ReservationManager
from ipam_core.store import SQLModelStore
from ipam_core.subnets import SubnetRegistry

SEED_ACTOR = "seed"


def seed(session: Session) -> dict:
    store = SQLModelStore(session)
    recorder = HistoryRecorder(session)
    registry = SubnetRegistry(store)
    allocator = AllocationEngine(store, recorder)
    reservations = ReservationManager(store, recorder)

    # 1. Subnets
    web = store.find_subnet("192.168.1.0", 24, IPFamily.V4)
    if not web:
        web = registry.create_subnet("192.168.1.0", 24, description="Web Tier", location="DC1", vlan_id=10)

    lab = store.find_subnet("2001:db8::", 64, IPFamily.V6)
    if not lab:
        lab = registry.create_subnet("2001:db8::", 64, description="IPv6 Lab", location="DC1")
    logger.info(f"Subnets seeded: {web.id}, {lab.id}")

    # 2. Allocations
    if not store.find_occupied(web.id):
        allocator.allocate(web.id, "192.168.1.1", {"hostname": "gateway"},
                           status="static", actor=SEED_ACTOR)
        for i in range(5):
            allocator.allocate(web.id, metadata={"hostname": f"web-{i}"}, actor=SEED_ACTOR)
        allocator.allocate(lab.id, metadata={"hostname": "lab-router"}, actor=SEED_ACTOR)

        # 3. Reservations
        reservations.create_reservation(web.id, "192.168.1.200", "192.168.1.250",
                                        purpose="DHCP pool", actor=SEED_ACTOR)
        logger.info("Addresses seeded")

    return {"web": web.id, "lab": lab.id}


if __name__ == "__main__":
    create_db_and_tables()
    with Session(engine) as session:
        seed(session)
