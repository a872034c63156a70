"""Pytest configuration and shared fixtures."""
import os

# Must be set before ipam_core is imported
os.environ.setdefault("IPAM_LOG_TO_FILE", "false")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlmodel import Session, SQLModel

from ipam_core import models  # noqa: F401
from ipam_core.allocation import AllocationEngine
from ipam_core.audit import HistoryRecorder
from ipam_core.database import build_engine
from ipam_core.reservations import ReservationManager
from ipam_core.store import SQLModelStore
from ipam_core.subnets import SubnetRegistry


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite://")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def store(session):
    return SQLModelStore(session)


@pytest.fixture
def recorder(session):
    return HistoryRecorder(session)


@pytest.fixture
def registry(store):
    return SubnetRegistry(store)


@pytest.fixture
def allocator(store, recorder):
    return AllocationEngine(store, recorder)


@pytest.fixture
def reservations(store, recorder):
    return ReservationManager(store, recorder)


@pytest.fixture
def v4_subnet(registry):
    """192.168.1.0/24"""
    return registry.create_subnet("192.168.1.0", 24, description="Web Tier")


@pytest.fixture
def v6_subnet(registry):
    """2001:db8::/64"""
    return registry.create_subnet("2001:db8::", 64, description="IPv6 Lab")
