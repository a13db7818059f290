"""FastAPI application for the branch queue.

The app issues tickets, lets counters call the next customer, and records
how each visit ends.  Every change is republished on Redis to the branch
and counter rooms, and ``/api/events`` relays those rooms to browsers as
Server-Sent Events.  Authentication happens upstream; the acting staff
member arrives in the ``X-User-Id`` header.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, Dict, Optional

import redis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from database import fetch_one, init_db, USE_POSTGRES
from events import branch_room, counter_room, get_redis, subscribe
from schemas import CallNextRequest, TicketCreate, TicketUpdate
from services import (
    CounterNotFound,
    InvalidTransition,
    QueueError,
    ServiceNotFound,
    TicketNotFound,
    ValidationError,
    call_next,
    cancel_ticket,
    create_ticket,
    get_ticket,
    list_tickets,
    update_ticket,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 8000))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
HEARTBEAT_SECONDS = 5.0

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Branch Queue",
    description="Ticket issuance and counter dispatch for multi-branch service counters",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = {
    ValidationError: 400,
    TicketNotFound: 404,
    CounterNotFound: 404,
    ServiceNotFound: 404,
    InvalidTransition: 409,
}


def _http_error(exc: QueueError) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS.get(type(exc), 400), detail=str(exc))


@app.on_event("startup")
def on_startup() -> None:
    logger.info("Starting Branch Queue (%s)", "PostgreSQL" if USE_POSTGRES else "SQLite")
    init_db()
    if not get_redis():
        logger.warning("REDIS_URL not configured; real-time events are disabled")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/")
def root():
    return {
        "service": "Branch Queue API",
        "status": "running",
        "version": "1.0.0",
        "endpoints": {
            "tickets": "/api/tickets",
            "call_next": "/api/tickets/call-next",
            "events": "/api/events",
            "health": "/health",
        },
    }


@app.get("/health")
def health_check():
    try:
        fetch_one("SELECT 1 AS ok")
    except Exception as e:
        logger.error("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail=f"Service unhealthy: {e}")

    redis_status = "unavailable"
    redis_client = get_redis()
    if redis_client:
        try:
            redis_client.ping()
            redis_status = "connected"
        except redis.RedisError as e:
            logger.warning("Redis ping failed: %s", e)

    return {"status": "healthy", "database": "connected", "redis": redis_status}


@app.post("/api/tickets", status_code=201)
def create_ticket_endpoint(
    body: TicketCreate, x_user_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    """Issue a ticket.  Safe to retry: a failed attempt consumes no number."""
    try:
        ticket = create_ticket(
            body.service_id,
            body.branch_id,
            priority_level=body.priority_level,
            customer_name=body.customer_name,
            customer_phone=body.customer_phone,
            notes=body.notes,
            issued_by=x_user_id,
        )
    except QueueError as e:
        raise _http_error(e)
    except Exception:
        logger.exception("Error creating ticket")
        raise HTTPException(status_code=500, detail="Failed to create ticket")
    return {"ticket": ticket}


@app.get("/api/tickets")
def list_tickets_endpoint(
    branch_id: Optional[str] = None,
    status: Optional[str] = None,
    service_id: Optional[str] = None,
    counter_id: Optional[str] = None,
    served_by: Optional[str] = None,
    date: Optional[str] = None,
    start_date: Optional[str] = None,
    sort: Optional[str] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    try:
        tickets = list_tickets(
            branch_id=branch_id,
            status=status,
            service_id=service_id,
            counter_id=counter_id,
            served_by=served_by,
            day=date,
            start_date=start_date,
            sort=sort,
            limit=limit,
        )
    except QueueError as e:
        raise _http_error(e)
    return {"tickets": tickets}


@app.post("/api/tickets/call-next")
def call_next_endpoint(body: CallNextRequest) -> Dict[str, Any]:
    """Give the counter the next waiting ticket of its branch.

    An empty queue is a normal answer: ``{"ticket": null}``.
    """
    try:
        ticket = call_next(body.counter_id, body.service_id)
    except QueueError as e:
        raise _http_error(e)
    except Exception:
        logger.exception("Error calling next ticket")
        raise HTTPException(status_code=500, detail="Failed to call next ticket")

    if ticket is None:
        return {"ticket": None, "message": "No tickets in queue"}
    return {"ticket": ticket}


@app.get("/api/tickets/{ticket_id}")
def get_ticket_endpoint(ticket_id: str) -> Dict[str, Any]:
    ticket = get_ticket(ticket_id)
    if not ticket:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return {"ticket": ticket}


@app.patch("/api/tickets/{ticket_id}")
def update_ticket_endpoint(
    ticket_id: str, body: TicketUpdate, x_user_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    try:
        ticket = update_ticket(ticket_id, body, user_id=x_user_id)
    except QueueError as e:
        raise _http_error(e)
    except Exception:
        logger.exception("Error updating ticket %s", ticket_id)
        raise HTTPException(status_code=500, detail="Failed to update ticket")
    return {"ticket": ticket}


@app.delete("/api/tickets/{ticket_id}")
def delete_ticket_endpoint(
    ticket_id: str, x_user_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    """Cancel a ticket.  Tickets are never removed, only cancelled."""
    try:
        cancel_ticket(ticket_id, user_id=x_user_id)
    except QueueError as e:
        raise _http_error(e)
    except Exception:
        logger.exception("Error deleting ticket %s", ticket_id)
        raise HTTPException(status_code=500, detail="Failed to delete ticket")
    return {"success": True}


@app.get("/api/events")
def ticket_events(branch_id: Optional[str] = None, counter_id: Optional[str] = None):
    """Server-Sent Events for one branch and/or one counter."""
    rooms = []
    if branch_id:
        rooms.append(branch_room(branch_id))
    if counter_id:
        rooms.append(counter_room(counter_id))
    if not rooms:
        raise HTTPException(status_code=400, detail="branch_id or counter_id is required")

    pubsub = subscribe(rooms)
    if pubsub is None:
        raise HTTPException(status_code=503, detail="Real-time events are not available")

    def event_stream():
        try:
            while True:
                try:
                    message = pubsub.get_message(timeout=HEARTBEAT_SECONDS)
                except redis.RedisError as e:
                    logger.error("Event stream for %s lost Redis: %s", rooms, e)
                    yield f"data: {json.dumps({'event': 'error', 'message': 'stream interrupted'})}\n\n"
                    return
                if message and message["type"] == "message":
                    yield f"data: {message['data']}\n\n"
                else:
                    yield f"data: {json.dumps({'event': 'heartbeat'})}\n\n"
        finally:
            pubsub.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
