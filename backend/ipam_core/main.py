"""
IPAM Core FastAPI application with request logging and error handling.
"""
from fastapi import FastAPI, Depends, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime
from sqlmodel import Session, SQLModel
from sqlalchemy import text
from typing import List, Optional
import time

from . import __version__
from .allocation import AllocationEngine
from .audit import HistoryRecorder
from .codec import IPFamily
from .config import CORS_ORIGINS, RECENT_HISTORY_LIMIT
from .database import create_db_and_tables, engine, get_session
from .exceptions import IPAMError
from .logger import logger, log_operation, log_request, log_error
from .models import IPAddress, IPHistory, Reservation, SubnetBase, Subnet
from .reservations import ReservationManager
from .status import IPStatus
from .store import SQLModelStore
from .subnet import AddressRange, compute_range, contains
from .subnets import SubnetRegistry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info("🚀 IPAM Core starting up...")
    try:
        create_db_and_tables()
    except Exception as e:
        logger.error(f"❌ Startup failed: {str(e)}", exc_info=True)
        raise

    yield

    logger.info("🛑 IPAM Core shutting down...")


app = FastAPI(
    title="IPAM Core",
    description="IPv4/IPv6 address allocation engine",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_logging(request, call_next):
    """Middleware to log all HTTP requests with timing."""
    start_time = time.time()
    path = request.url.path
    method = request.method

    try:
        response = await call_next(request)
        duration = (time.time() - start_time) * 1000
        log_request(method, path, response.status_code, duration)
        return response
    except Exception:
        logger.error(f"Request failed: {method} {path}", exc_info=True)
        raise


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Handle HTTP exceptions with proper logging."""
    logger.warning(f"HTTP {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error_code": "HTTP_ERROR", "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_store(session: Session = Depends(get_session)) -> SQLModelStore:
    return SQLModelStore(session)


def get_recorder(session: Session = Depends(get_session)) -> HistoryRecorder:
    return HistoryRecorder(session)


def get_allocator(store: SQLModelStore = Depends(get_store),
                  recorder: HistoryRecorder = Depends(get_recorder)) -> AllocationEngine:
    return AllocationEngine(store, recorder)


def get_reservations(store: SQLModelStore = Depends(get_store),
                     recorder: HistoryRecorder = Depends(get_recorder)) -> ReservationManager:
    return ReservationManager(store, recorder)


def get_registry(store: SQLModelStore = Depends(get_store)) -> SubnetRegistry:
    return SubnetRegistry(store)


def get_actor(x_actor: Optional[str] = Header(default=None)) -> Optional[str]:
    """Who is making the change. Authentication happens upstream."""
    return x_actor


# ============================================================================
# SUBNET ENDPOINTS
# ============================================================================

class SubnetCreate(SQLModel):
    """Model for creating a new subnet."""
    network_address: str
    prefix_length: int
    family: Optional[IPFamily] = None
    description: Optional[str] = None
    location: Optional[str] = None
    vlan_id: Optional[int] = None
    parent_subnet_id: Optional[int] = None


class SubnetRead(SubnetBase):
    """Model for reading subnet with calculated fields."""
    id: int
    total: int
    used: int
    reserved: int
    available: int
    utilization: float


def _subnet_read(subnet: Subnet, stats: dict) -> SubnetRead:
    return SubnetRead(
        **subnet.model_dump(),
        total=stats["total"],
        used=stats["used"],
        reserved=stats["reserved"],
        available=stats["available"],
        utilization=stats["utilization_percent"],
    )


@app.post("/subnets", response_model=Subnet, status_code=201)
def create_subnet(subnet_data: SubnetCreate, registry: SubnetRegistry = Depends(get_registry)):
    """Declare a new subnet."""
    try:
        return registry.create_subnet(**subnet_data.model_dump())
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "create_subnet", {"network_address": subnet_data.network_address})
        raise HTTPException(status_code=500, detail="Failed to create subnet")


@app.get("/subnets", response_model=List[SubnetRead])
def list_subnets(
    family: Optional[IPFamily] = None,
    location: Optional[str] = None,
    vlan_id: Optional[int] = None,
    search: Optional[str] = None,
    registry: SubnetRegistry = Depends(get_registry),
):
    """List subnets with utilization, optionally filtered."""
    try:
        subnets = registry.list_subnets(family, location, vlan_id, search)
        return [_subnet_read(subnet, registry.utilization(subnet.id)) for subnet in subnets]
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "list_subnets")
        raise HTTPException(status_code=500, detail="Failed to fetch subnets")


@app.get("/subnets/{subnet_id}", response_model=SubnetRead)
def get_subnet(subnet_id: int, registry: SubnetRegistry = Depends(get_registry)):
    """Get subnet details with utilization."""
    try:
        subnet = registry.get_subnet(subnet_id)
        return _subnet_read(subnet, registry.utilization(subnet_id))
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "get_subnet", {"subnet_id": subnet_id})
        raise HTTPException(status_code=500, detail="Failed to fetch subnet")


class SubnetUpdate(SQLModel):
    network_address: Optional[str] = None
    prefix_length: Optional[int] = None
    description: Optional[str] = None
    location: Optional[str] = None
    vlan_id: Optional[int] = None
    parent_subnet_id: Optional[int] = None


@app.patch("/subnets/{subnet_id}", response_model=SubnetRead)
def update_subnet(subnet_id: int, request: SubnetUpdate, registry: SubnetRegistry = Depends(get_registry)):
    """Edit a subnet. The network itself only changes while the subnet is empty."""
    try:
        subnet = registry.update_subnet(subnet_id, request.model_dump(exclude_unset=True))
        return _subnet_read(subnet, registry.utilization(subnet.id))
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "update_subnet", {"subnet_id": subnet_id})
        raise HTTPException(status_code=500, detail="Failed to update subnet")


@app.delete("/subnets/{subnet_id}", status_code=204)
def delete_subnet(subnet_id: int, registry: SubnetRegistry = Depends(get_registry)):
    """Delete a subnet that has nothing allocated or reserved."""
    try:
        registry.delete_subnet(subnet_id)
        return None
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "delete_subnet", {"subnet_id": subnet_id})
        raise HTTPException(status_code=500, detail="Failed to delete subnet")


@app.get("/subnets/{subnet_id}/utilization")
def subnet_utilization(subnet_id: int, registry: SubnetRegistry = Depends(get_registry)):
    try:
        return registry.utilization(subnet_id)
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "subnet_utilization", {"subnet_id": subnet_id})
        raise HTTPException(status_code=500, detail="Failed to compute utilization")


@app.get("/reports/utilization")
def utilization_report(registry: SubnetRegistry = Depends(get_registry)):
    try:
        return registry.utilization_report()
    except Exception as e:
        log_error(e, "utilization_report")
        raise HTTPException(status_code=500, detail="Failed to build utilization report")


@app.get("/reports/status")
def status_report(registry: SubnetRegistry = Depends(get_registry)):
    """Address record counts per status across all subnets."""
    try:
        return registry.status_report()
    except Exception as e:
        log_error(e, "status_report")
        raise HTTPException(status_code=500, detail="Failed to build status report")


# ============================================================================
# IP ADDRESS ENDPOINTS
# ============================================================================

class IPAllocationRequest(SQLModel):
    address: Optional[str] = None  # If None, next available
    status: IPStatus = IPStatus.ASSIGNED
    hostname: Optional[str] = None
    mac_address: Optional[str] = None
    device_name: Optional[str] = None
    assigned_to: Optional[str] = None
    description: Optional[str] = None


class IPUpdateRequest(SQLModel):
    status: Optional[IPStatus] = None
    hostname: Optional[str] = None
    mac_address: Optional[str] = None
    device_name: Optional[str] = None
    assigned_to: Optional[str] = None
    description: Optional[str] = None


@app.post("/subnets/{subnet_id}/allocate", response_model=IPAddress, status_code=201)
def allocate_ip(
    subnet_id: int,
    request: Optional[IPAllocationRequest] = None,
    allocator: AllocationEngine = Depends(get_allocator),
    actor: Optional[str] = Depends(get_actor),
):
    """Allocate a specific address, or the next available one, from a subnet."""
    request = request or IPAllocationRequest()
    metadata = request.model_dump(exclude={"address", "status"}, exclude_none=True)
    try:
        return allocator.allocate(subnet_id, request.address, metadata, request.status, actor)
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "allocate_ip", {"subnet_id": subnet_id})
        raise HTTPException(status_code=500, detail="Failed to allocate IP address")


@app.get("/subnets/{subnet_id}/ips", response_model=List[IPAddress])
def list_subnet_ips(
    subnet_id: int,
    status_filter: Optional[IPStatus] = None,
    registry: SubnetRegistry = Depends(get_registry),
):
    """List address records of a subnet in numeric order, optionally filtered by status."""
    try:
        return registry.list_addresses(subnet_id, status_filter)
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "list_subnet_ips", {"subnet_id": subnet_id})
        raise HTTPException(status_code=500, detail="Failed to fetch IP addresses")


@app.get("/ips", response_model=List[IPAddress])
def list_ips(
    subnet_id: Optional[int] = None,
    status_filter: Optional[IPStatus] = None,
    search: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    registry: SubnetRegistry = Depends(get_registry),
):
    """Search address records across subnets by address, hostname, MAC, device or assignee."""
    try:
        return registry.search_addresses(subnet_id, status_filter, search, limit, offset)
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "list_ips", {"subnet_id": subnet_id, "search": search})
        raise HTTPException(status_code=500, detail="Failed to fetch IP addresses")


@app.get("/ips/{ip_id}")
def get_ip(
    ip_id: int,
    allocator: AllocationEngine = Depends(get_allocator),
    recorder: HistoryRecorder = Depends(get_recorder),
):
    """One address record with its 20 most recent history entries."""
    try:
        record = allocator.get_record(ip_id)
        history = recorder.list_history(ip_address_id=record.id, limit=RECENT_HISTORY_LIMIT)
        return {**record.model_dump(), "history": [entry.model_dump() for entry in history]}
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "get_ip", {"ip_id": ip_id})
        raise HTTPException(status_code=500, detail="Failed to fetch IP address")


@app.post("/ips/{ip_id}/release", response_model=IPAddress)
def release_ip(
    ip_id: int,
    allocator: AllocationEngine = Depends(get_allocator),
    actor: Optional[str] = Depends(get_actor),
):
    """Release an address back to Available, clearing its metadata."""
    try:
        return allocator.release(ip_id, actor)
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "release_ip", {"ip_id": ip_id})
        raise HTTPException(status_code=500, detail="Failed to release IP address")


@app.patch("/ips/{ip_id}", response_model=IPAddress)
def update_ip(
    ip_id: int,
    request: IPUpdateRequest,
    allocator: AllocationEngine = Depends(get_allocator),
    actor: Optional[str] = Depends(get_actor),
):
    """Edit address metadata and optionally its status."""
    metadata = request.model_dump(exclude={"status"}, exclude_unset=True)
    try:
        return allocator.update_metadata(ip_id, metadata, request.status, actor)
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "update_ip", {"ip_id": ip_id})
        raise HTTPException(status_code=500, detail="Failed to update IP address")


# ============================================================================
# RESERVATION ENDPOINTS
# ============================================================================

class ReservationCreate(SQLModel):
    subnet_id: int
    start_ip: str
    end_ip: str
    purpose: Optional[str] = None
    reserved_by: Optional[str] = None
    expires_at: Optional[datetime] = None


class ReservationUpdate(SQLModel):
    purpose: Optional[str] = None
    reserved_by: Optional[str] = None
    expires_at: Optional[datetime] = None


@app.post("/reservations", response_model=Reservation, status_code=201)
def create_reservation(
    request: ReservationCreate,
    manager: ReservationManager = Depends(get_reservations),
    actor: Optional[str] = Depends(get_actor),
):
    """Reserve an inclusive address range inside a subnet."""
    try:
        return manager.create_reservation(actor=actor, **request.model_dump())
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "create_reservation", {"subnet_id": request.subnet_id})
        raise HTTPException(status_code=500, detail="Failed to create reservation")


@app.get("/reservations", response_model=List[Reservation])
def list_reservations(
    subnet_id: Optional[int] = None,
    search: Optional[str] = None,
    active_only: bool = False,
    manager: ReservationManager = Depends(get_reservations),
):
    try:
        return manager.list_reservations(subnet_id, search, active_only)
    except Exception as e:
        log_error(e, "list_reservations", {"subnet_id": subnet_id})
        raise HTTPException(status_code=500, detail="Failed to fetch reservations")


@app.post("/reservations/purge-expired")
def purge_expired_reservations(
    manager: ReservationManager = Depends(get_reservations),
    actor: Optional[str] = Depends(get_actor),
):
    """Delete every reservation whose expiry has passed."""
    try:
        return {"purged": manager.purge_expired_reservations(actor=actor)}
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "purge_expired_reservations")
        raise HTTPException(status_code=500, detail="Failed to purge reservations")


@app.get("/reservations/{reservation_id}", response_model=Reservation)
def get_reservation(reservation_id: int, manager: ReservationManager = Depends(get_reservations)):
    try:
        return manager.get_reservation(reservation_id)
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "get_reservation", {"reservation_id": reservation_id})
        raise HTTPException(status_code=500, detail="Failed to fetch reservation")


@app.patch("/reservations/{reservation_id}", response_model=Reservation)
def update_reservation(
    reservation_id: int,
    request: ReservationUpdate,
    manager: ReservationManager = Depends(get_reservations),
    actor: Optional[str] = Depends(get_actor),
):
    """Edit purpose, owner or expiry of a reservation."""
    try:
        return manager.update_reservation(reservation_id, request.model_dump(exclude_unset=True), actor)
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "update_reservation", {"reservation_id": reservation_id})
        raise HTTPException(status_code=500, detail="Failed to update reservation")


@app.delete("/reservations/{reservation_id}")
def delete_reservation(
    reservation_id: int,
    manager: ReservationManager = Depends(get_reservations),
    actor: Optional[str] = Depends(get_actor),
):
    """Delete a reservation, returning its still-reserved addresses to the pool."""
    try:
        return {"released": manager.delete_reservation(reservation_id, actor)}
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "delete_reservation", {"reservation_id": reservation_id})
        raise HTTPException(status_code=500, detail="Failed to delete reservation")


# ============================================================================
# TOOLS
# ============================================================================

@app.get("/tools/range", response_model=AddressRange)
def range_tool(network: str, prefix: int, family: Optional[IPFamily] = None):
    """Usable range of network/prefix without declaring a subnet."""
    try:
        return compute_range(network, prefix, family)
    except IPAMError as e:
        raise e.to_http_exception()


@app.get("/tools/contains")
def contains_tool(address: str, network: str, prefix: int, family: Optional[IPFamily] = None):
    """Whether an address falls inside network/prefix."""
    try:
        result = contains(address, network, prefix, family)
        log_operation("contains", "success", {"address": address, "network": f"{network}/{prefix}"})
        return {"address": address, "network": network, "prefix": prefix, "contains": result}
    except IPAMError as e:
        raise e.to_http_exception()


# ============================================================================
# HISTORY
# ============================================================================

@app.get("/history", response_model=List[IPHistory])
def list_history(
    ip_address_id: Optional[int] = None,
    reservation_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100,
    recorder: HistoryRecorder = Depends(get_recorder),
):
    try:
        return recorder.list_history(ip_address_id, action, reservation_id, limit)
    except Exception as e:
        log_error(e, "list_history")
        raise HTTPException(status_code=500, detail="Failed to fetch history")


@app.get("/history/{entry_id}", response_model=IPHistory)
def get_history_entry(entry_id: int, recorder: HistoryRecorder = Depends(get_recorder)):
    try:
        return recorder.get_entry(entry_id)
    except IPAMError as e:
        raise e.to_http_exception()
    except Exception as e:
        log_error(e, "get_history_entry", {"entry_id": entry_id})
        raise HTTPException(status_code=500, detail="Failed to fetch history entry")


# ============================================================================
# HEALTH & STATUS ENDPOINTS
# ============================================================================

@app.get("/health")
def health_check():
    """Health check endpoint for monitoring."""
    try:
        with Session(engine) as session:
            session.execute(text("SELECT 1"))
        return {"status": "healthy", "version": __version__, "database": "connected"}
    except Exception as e:
        logger.error("Health check failed", exc_info=True)
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "version": __version__,
                "database": "disconnected",
                "error": str(e),
            },
        )


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "name": "IPAM Core",
        "version": __version__,
        "docs": "/docs",
        "health": "/health"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
