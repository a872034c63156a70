"""
Audit trail: one history entry per committed mutation.
"""
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from sqlmodel import Session, SQLModel, col, select

from .exceptions import ResourceNotFoundError
from .logger import log_database_operation
from .models import IPHistory

DEFAULT_ACTOR = "system"


class HistoryAction(str, Enum):
    ASSIGNED = "assigned"
    RELEASED = "released"
    UPDATED = "updated"
    RESERVATION_CREATED = "reservation_created"
    RESERVATION_UPDATED = "reservation_updated"
    RESERVATION_DELETED = "reservation_deleted"


def snapshot(obj: Optional[SQLModel]) -> Optional[dict]:
    """JSON-safe copy of a model's current field values."""
    if obj is None:
        return None
    return obj.model_dump(mode="json")


class AuditRecorder(ABC):
    @abstractmethod
    def record(self, action: HistoryAction, actor: Optional[str], before: Optional[dict],
               after: Optional[dict], ip_address_id: int = None,
               reservation_id: int = None, subnet_id: int = None) -> None:
        ...


class HistoryRecorder(AuditRecorder):
    """Writes IPHistory rows into the same session as the change they describe."""

    def __init__(self, session: Session):
        self.session = session

    def record(self, action: HistoryAction, actor: Optional[str], before: Optional[dict],
               after: Optional[dict], ip_address_id: int = None,
               reservation_id: int = None, subnet_id: int = None) -> None:
        entry = IPHistory(
            action=HistoryAction(action).value,
            actor=actor or DEFAULT_ACTOR,
            before=before,
            after=after,
            ip_address_id=ip_address_id,
            reservation_id=reservation_id,
            subnet_id=subnet_id,
        )
        self.session.add(entry)
        self.session.flush()
        log_database_operation("CREATE", "IPHistory", "success", details={"action": entry.action})

    def list_history(self, ip_address_id: int = None, action: str = None,
                     reservation_id: int = None, limit: int = 100) -> List[IPHistory]:
        query = select(IPHistory)
        if ip_address_id is not None:
            query = query.where(IPHistory.ip_address_id == ip_address_id)
        if reservation_id is not None:
            query = query.where(IPHistory.reservation_id == reservation_id)
        if action:
            query = query.where(IPHistory.action == action)
        entries = self.session.exec(
            query.order_by(col(IPHistory.created_at).desc(), col(IPHistory.id).desc()).limit(limit)
        ).all()
        log_database_operation("READ", "IPHistory", "success", count=len(entries))
        return list(entries)

    def get_entry(self, entry_id: int) -> IPHistory:
        entry = self.session.get(IPHistory, entry_id)
        if entry is None:
            raise ResourceNotFoundError("IPHistory", entry_id)
        return entry
