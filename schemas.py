"""Pydantic schemas for requests.

We define only request bodies here.  Responses are built from
``models.TicketRead`` in the service layer and returned as plain dicts.
"""
from typing import Optional

from pydantic import BaseModel, Field

from models import TicketStatus


class TicketCreate(BaseModel):
    # Presence is checked by the service layer so that a missing id is
    # reported the same way from every caller.
    service_id: Optional[str] = None
    branch_id: Optional[str] = None
    priority_level: int = 0
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = None


class CallNextRequest(BaseModel):
    counter_id: Optional[str] = None
    service_id: Optional[str] = None


class TicketUpdate(BaseModel):
    """Partial update of a ticket; one optional field per mutable column."""

    status: Optional[TicketStatus] = None
    counter_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=2000)

    def is_empty(self) -> bool:
        return self.status is None and self.counter_id is None and self.notes is None
