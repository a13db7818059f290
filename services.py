"""Ticket issuance, dispatch and status changes.

Two procedures here carry the concurrency guarantees of the queue:

* ``create_ticket`` draws the next number from the per-service, per-branch,
  per-day sequence and inserts the ticket in the same transaction, so a
  failed insert never burns a number.
* ``call_next`` locks the head of a branch's waiting queue and hands it to
  a counter, so two counters calling at once never get the same ticket.

Both hold their row locks from the first locking read until commit and
publish their events only after the commit.  Everything else is ordinary
reads and single-row updates.
"""

from __future__ import annotations

import logging
import os
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import events
from database import fetch_all, fetch_one, for_update, sql, transaction
from models import TERMINAL_STATUSES, TicketRead, TicketStatus
from schemas import TicketUpdate

logger = logging.getLogger(__name__)

# Prefix for services whose prefix is blank.  An empty value turns the
# fallback off and such services are rejected instead.
TICKET_PREFIX_FALLBACK = os.getenv("TICKET_PREFIX_FALLBACK", "TKT")
NUMBER_WIDTH = 3
MAX_LIST_LIMIT = 1000
SORTABLE_FIELDS = ("created_at", "ended_at", "called_at", "ticket_number", "priority_level")

ALLOWED_TRANSITIONS = {
    TicketStatus.waiting: frozenset({TicketStatus.serving, TicketStatus.cancelled}),
    TicketStatus.serving: frozenset(
        {TicketStatus.done, TicketStatus.cancelled, TicketStatus.skipped}
    ),
}

TICKET_SELECT = """
    SELECT t.*,
           s.name AS service_name, s.prefix AS service_prefix,
           c.name AS counter_name,
           b.name AS branch_name
    FROM tickets t
    LEFT JOIN services s ON t.service_id = s.id
    LEFT JOIN counters c ON t.counter_id = c.id
    LEFT JOIN branches b ON t.branch_id = b.id
"""


class QueueError(Exception):
    """Base class for errors the API reports back to the client."""


class ValidationError(QueueError):
    pass


class TicketNotFound(QueueError):
    pass


class CounterNotFound(QueueError):
    pass


class ServiceNotFound(QueueError):
    pass


class InvalidTransition(QueueError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _timestamp() -> str:
    return _utcnow().isoformat(timespec="microseconds")


def _present(row: Dict[str, Any]) -> Dict[str, Any]:
    return TicketRead.from_row(row).model_dump(mode="json")


# ===== SEQUENCE ALLOCATION =====

def format_ticket_number(prefix: str, number: int) -> str:
    """``A`` and 7 give ``A-007``.  The width is a minimum, never a cap."""
    return f"{prefix}-{number:0{NUMBER_WIDTH}d}"


def _service_prefix(cur, service_id: str) -> str:
    cur.execute(sql("SELECT prefix FROM services WHERE id = ?"), (service_id,))
    row = cur.fetchone()
    if row is None:
        raise ServiceNotFound(f"Service {service_id} not found")
    prefix = (row["prefix"] or "").strip()
    if prefix:
        return prefix
    if not TICKET_PREFIX_FALLBACK:
        raise ValidationError(f"Service {service_id} has no ticket prefix")
    logger.warning(
        "Service %s has no prefix; using fallback %r", service_id, TICKET_PREFIX_FALLBACK
    )
    return TICKET_PREFIX_FALLBACK


def allocate_ticket_number(
    cur, service_id: str, branch_id: str, today: Optional[date] = None
) -> str:
    """Advance the day's sequence for a service at a branch and format it.

    Must run on the cursor of an open write transaction.  The sequence row
    stays locked until that transaction ends, so concurrent callers for the
    same key get consecutive numbers in commit order, and a rollback leaves
    the sequence where it was.
    """
    issue_date = (today or _utcnow().date()).isoformat()
    key = (service_id, branch_id, issue_date)
    prefix = _service_prefix(cur, service_id)

    cur.execute(
        sql(
            """
            INSERT INTO ticket_sequences (service_id, branch_id, issue_date, current_number)
            VALUES (?, ?, ?, 0)
            ON CONFLICT (service_id, branch_id, issue_date) DO NOTHING
            """
        ),
        key,
    )
    cur.execute(
        sql(
            """
            SELECT current_number FROM ticket_sequences
            WHERE service_id = ? AND branch_id = ? AND issue_date = ?
            """
            + for_update()
        ),
        key,
    )
    number = cur.fetchone()["current_number"] + 1
    cur.execute(
        sql(
            """
            UPDATE ticket_sequences SET current_number = ?
            WHERE service_id = ? AND branch_id = ? AND issue_date = ?
            """
        ),
        (number,) + key,
    )
    return format_ticket_number(prefix, number)


# ===== TICKETS =====

def _insert_ticket(cur, ticket: Dict[str, Any]) -> None:
    columns = ", ".join(ticket)
    placeholders = ", ".join("?" for _ in ticket)
    cur.execute(
        sql(f"INSERT INTO tickets ({columns}) VALUES ({placeholders})"),
        tuple(ticket.values()),
    )


def create_ticket(
    service_id: Optional[str],
    branch_id: Optional[str],
    priority_level: int = 0,
    customer_name: Optional[str] = None,
    customer_phone: Optional[str] = None,
    notes: Optional[str] = None,
    issued_by: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Issue a new waiting ticket and announce it to the branch."""
    if not service_id or not branch_id:
        raise ValidationError("service_id and branch_id are required")

    ticket_id = str(uuid.uuid4())
    with transaction() as cur:
        ticket_number = allocate_ticket_number(cur, service_id, branch_id, today)
        _insert_ticket(
            cur,
            {
                "id": ticket_id,
                "ticket_number": ticket_number,
                "service_id": service_id,
                "branch_id": branch_id,
                "priority_level": priority_level,
                "status": TicketStatus.waiting.value,
                "customer_name": customer_name or None,
                "customer_phone": customer_phone or None,
                "notes": notes or None,
                "issued_by": issued_by,
                "created_at": _timestamp(),
            },
        )
    logger.info("Issued ticket %s at branch %s", ticket_number, branch_id)

    ticket = get_ticket(ticket_id)
    events.emit_ticket_created(ticket)
    return ticket


def _lock_next_waiting(cur, branch_id: str, service_id: Optional[str]) -> Optional[str]:
    """Lock the head of the waiting queue and return its id.

    Highest priority first, then oldest.  If another dispatcher holds the
    head, this blocks until that transaction ends rather than skipping
    ahead.
    """
    statement = "SELECT id FROM tickets WHERE status = ? AND branch_id = ?"
    params: List[Any] = [TicketStatus.waiting.value, branch_id]
    if service_id:
        statement += " AND service_id = ?"
        params.append(service_id)
    statement += " ORDER BY priority_level DESC, created_at ASC LIMIT 1" + for_update()

    cur.execute(sql(statement), tuple(params))
    row = cur.fetchone()
    return row["id"] if row else None


def call_next(counter_id: Optional[str], service_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Hand the next waiting ticket of the counter's branch to the counter.

    Returns None when nobody is waiting.
    """
    if not counter_id:
        raise ValidationError("counter_id is required")

    with transaction() as cur:
        cur.execute(sql("SELECT branch_id FROM counters WHERE id = ?"), (counter_id,))
        counter = cur.fetchone()
        if counter is None:
            raise CounterNotFound(f"Counter {counter_id} not found")

        ticket_id = _lock_next_waiting(cur, counter["branch_id"], service_id)
        if ticket_id is None:
            logger.debug("No tickets waiting for counter %s", counter_id)
            return None

        now = _timestamp()
        cur.execute(
            sql(
                """
                UPDATE tickets
                SET status = ?, counter_id = ?, called_at = ?, started_at = ?
                WHERE id = ?
                """
            ),
            (TicketStatus.serving.value, counter_id, now, now, ticket_id),
        )

    ticket = get_ticket(ticket_id)
    logger.info("Counter %s called ticket %s", counter_id, ticket["ticket_number"])
    events.emit_ticket_updated(ticket)
    events.emit_ticket_called(ticket)
    return ticket


def check_transition(current: TicketStatus, new: TicketStatus) -> None:
    if new not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(
            f"Cannot move ticket from {current.value} to {new.value}"
        )


def _lock_ticket(cur, ticket_id: str) -> Dict[str, Any]:
    cur.execute(
        sql("SELECT id, status, branch_id, called_at FROM tickets WHERE id = ?" + for_update()),
        (ticket_id,),
    )
    row = cur.fetchone()
    if row is None:
        raise TicketNotFound(f"Ticket {ticket_id} not found")
    return dict(row)


def update_ticket(
    ticket_id: str, changes: TicketUpdate, user_id: Optional[str] = None
) -> Dict[str, Any]:
    """Apply a partial update, enforcing the ticket state machine.

    A ticket that has reached done, cancelled or skipped keeps its status
    and counter for good; only its notes can still change.
    """
    if changes.is_empty():
        raise ValidationError("No updates provided")

    with transaction() as cur:
        current = _lock_ticket(cur, ticket_id)
        status = TicketStatus(current["status"])
        if status in TERMINAL_STATUSES and (
            changes.status is not None or changes.counter_id is not None
        ):
            raise InvalidTransition(f"Ticket is already {status.value}")

        assignments: List[str] = []
        params: List[Any] = []
        if changes.status is not None:
            check_transition(status, changes.status)
            now = _timestamp()
            assignments.append("status = ?")
            params.append(changes.status.value)
            if changes.status is TicketStatus.serving:
                assignments.append("started_at = ?")
                params.append(now)
                if current["called_at"] is None:
                    assignments.append("called_at = ?")
                    params.append(now)
            else:
                assignments.append("ended_at = ?")
                params.append(now)
                if status is TicketStatus.serving:
                    assignments.append("served_by = ?")
                    params.append(user_id)
        if changes.counter_id is not None:
            cur.execute(sql("SELECT id FROM counters WHERE id = ?"), (changes.counter_id,))
            if cur.fetchone() is None:
                raise CounterNotFound(f"Counter {changes.counter_id} not found")
            assignments.append("counter_id = ?")
            params.append(changes.counter_id)
        if changes.notes is not None:
            assignments.append("notes = ?")
            params.append(changes.notes)

        params.append(ticket_id)
        cur.execute(
            sql(f"UPDATE tickets SET {', '.join(assignments)} WHERE id = ?"), tuple(params)
        )

    ticket = get_ticket(ticket_id)
    events.emit_ticket_updated(ticket)
    return ticket


def cancel_ticket(ticket_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Cancel a waiting or serving ticket.  The row itself is kept.

    Cancelling a ticket that was being served records who served it.
    """
    with transaction() as cur:
        current = _lock_ticket(cur, ticket_id)
        status = TicketStatus(current["status"])
        check_transition(status, TicketStatus.cancelled)
        statement = "UPDATE tickets SET status = ?, ended_at = ?"
        params: List[Any] = [TicketStatus.cancelled.value, _timestamp()]
        if status is TicketStatus.serving:
            statement += ", served_by = ?"
            params.append(user_id)
        params.append(ticket_id)
        cur.execute(sql(statement + " WHERE id = ?"), tuple(params))

    logger.info("Cancelled ticket %s", ticket_id)
    events.emit_ticket_deleted(ticket_id, current["branch_id"])
    return get_ticket(ticket_id)


# ===== READS =====

def get_ticket(ticket_id: str) -> Optional[Dict[str, Any]]:
    row = fetch_one(TICKET_SELECT + " WHERE t.id = ?", (ticket_id,))
    return _present(row) if row else None


def list_tickets(
    branch_id: Optional[str] = None,
    status: Optional[str] = None,
    service_id: Optional[str] = None,
    counter_id: Optional[str] = None,
    served_by: Optional[str] = None,
    day: Optional[str] = None,
    start_date: Optional[str] = None,
    sort: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Return tickets matching every given filter.

    ``day`` is an ISO date matched against the creation date.  ``status``
    may list several statuses separated by commas.  ``sort`` is
    ``field:asc`` or ``field:desc``; unknown fields sort by newest first.
    """
    statement = TICKET_SELECT + " WHERE 1=1"
    params: List[Any] = []

    if branch_id:
        statement += " AND t.branch_id = ?"
        params.append(branch_id)
    if status:
        statuses = [s.strip() for s in status.split(",") if s.strip()]
        try:
            statuses = [TicketStatus(s).value for s in statuses]
        except ValueError:
            raise ValidationError(f"Invalid status filter: {status}") from None
        statement += f" AND t.status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)
    if service_id:
        statement += " AND t.service_id = ?"
        params.append(service_id)
    if counter_id:
        statement += " AND t.counter_id = ?"
        params.append(counter_id)
    if served_by:
        statement += " AND t.served_by = ?"
        params.append(served_by)
    if day:
        statement += " AND DATE(t.created_at) = ?"
        params.append(day)
    if start_date:
        statement += " AND t.created_at >= ?"
        params.append(start_date)

    order = "t.created_at DESC"
    if sort:
        field, _, direction = sort.partition(":")
        if field in SORTABLE_FIELDS:
            order = f"t.{field} {'ASC' if direction.upper() == 'ASC' else 'DESC'}"
    statement += f" ORDER BY {order}"

    limit = min(limit or MAX_LIST_LIMIT, MAX_LIST_LIMIT)
    statement += f" LIMIT {max(limit, 1)}"

    return [_present(row) for row in fetch_all(statement, params)]
