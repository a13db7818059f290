"""Database models for the branch queue.

We use SQLModel to define the schema.  Branches, services and counters are
maintained by other parts of the system; this service reads them to resolve
prefixes and counter branches.  Tickets are the customers waiting at a
branch, and ticket sequences hold the per-service, per-branch, per-day
counter that ticket numbers are drawn from.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlmodel import Field, SQLModel


class TicketStatus(str, Enum):
    """Possible statuses for a ticket."""

    waiting = "waiting"
    serving = "serving"
    done = "done"
    cancelled = "cancelled"
    skipped = "skipped"


TERMINAL_STATUSES = frozenset(
    {TicketStatus.done, TicketStatus.cancelled, TicketStatus.skipped}
)


class Branch(SQLModel, table=True):
    __tablename__ = "branches"

    id: str = Field(primary_key=True)
    name: str
    is_active: bool = Field(default=True)


class Service(SQLModel, table=True):
    __tablename__ = "services"

    id: str = Field(primary_key=True)
    name: str
    prefix: str = Field(index=True)
    branch_id: Optional[str] = Field(default=None, foreign_key="branches.id")
    is_active: bool = Field(default=True)


class Counter(SQLModel, table=True):
    __tablename__ = "counters"

    id: str = Field(primary_key=True)
    name: str
    branch_id: str = Field(foreign_key="branches.id", index=True)
    staff_id: Optional[str] = None
    is_active: bool = Field(default=True)
    is_paused: bool = Field(default=False)


class Ticket(SQLModel, table=True):
    __tablename__ = "tickets"

    id: str = Field(primary_key=True)
    ticket_number: str = Field(index=True)
    service_id: str = Field(foreign_key="services.id", index=True)
    branch_id: str = Field(foreign_key="branches.id", index=True)
    counter_id: Optional[str] = Field(default=None, foreign_key="counters.id")
    priority_level: int = Field(default=0)
    status: str = Field(default=TicketStatus.waiting.value, index=True)
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = None
    issued_by: Optional[str] = None
    served_by: Optional[str] = None
    created_at: datetime = Field(index=True)
    called_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class TicketSequence(SQLModel, table=True):
    """Last number handed out for one service at one branch on one day.

    Rows are created lazily by the first ticket of the day and only ever
    written by the sequence allocator.
    """

    __tablename__ = "ticket_sequences"

    service_id: str = Field(primary_key=True, foreign_key="services.id")
    branch_id: str = Field(primary_key=True, foreign_key="branches.id")
    issue_date: str = Field(primary_key=True)  # YYYY-MM-DD, UTC
    current_number: int = Field(default=0)


class TicketRead(SQLModel):
    """A ticket joined with the display names of its service, counter and branch."""

    id: str
    ticket_number: str
    service_id: str
    branch_id: str
    counter_id: Optional[str] = None
    priority_level: int = 0
    status: TicketStatus
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = None
    issued_by: Optional[str] = None
    served_by: Optional[str] = None
    created_at: datetime
    called_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    service_name: Optional[str] = None
    service_prefix: Optional[str] = None
    counter_name: Optional[str] = None
    branch_name: Optional[str] = None
    service: Optional[Dict[str, Any]] = None
    counter: Optional[Dict[str, Any]] = None
    branch: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TicketRead":
        data = dict(row)
        if data.get("service_name"):
            data["service"] = {
                "name": data["service_name"],
                "prefix": data.get("service_prefix"),
            }
        if data.get("counter_name"):
            data["counter"] = {"name": data["counter_name"]}
        if data.get("branch_name"):
            data["branch"] = {"name": data["branch_name"]}
        return cls.model_validate(data)
