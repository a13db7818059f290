"""Real-time notifications over Redis pub/sub.

Every ticket mutation is republished to the rooms that care about it:
``branch:<id>`` for displays, kiosks and staff at a branch, and
``counter:<id>`` for the staff working one counter.  Subscribers join a
room by subscribing to the Redis channel of the same name, so membership
is tracked by Redis and not by this process.

Publishing is best effort.  It happens after the database commit, and a
Redis failure is logged without failing the request.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

import redis

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")

TICKET_CREATED = "ticket:created"
TICKET_UPDATED = "ticket:updated"
TICKET_CALLED = "ticket:called"
TICKET_DELETED = "ticket:deleted"

_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Get the Redis client, or None when REDIS_URL is not configured."""
    global _redis_client
    if not REDIS_URL:
        return None

    if _redis_client is None:
        _redis_client = redis.from_url(REDIS_URL, decode_responses=True)

    return _redis_client


def branch_room(branch_id: Any) -> str:
    return f"branch:{branch_id}"


def counter_room(counter_id: Any) -> str:
    return f"counter:{counter_id}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def publish(room: str, event: str, data: Dict[str, Any]) -> bool:
    """Publish one event to a room.  Returns False if it was not sent."""
    redis_client = get_redis()
    if redis_client is None:
        logger.debug("Redis not configured; dropping %s for %s", event, room)
        return False

    message = json.dumps({"event": event, "data": data, "timestamp": _now()}, default=str)
    try:
        redis_client.publish(room, message)
    except redis.RedisError as e:
        logger.error("Redis publish error on %s (%s): %s", room, event, e)
        return False
    return True


def emit_ticket_created(ticket: Dict[str, Any]) -> None:
    if publish(branch_room(ticket["branch_id"]), TICKET_CREATED, ticket):
        logger.info("Emitted %s for %s", TICKET_CREATED, ticket["ticket_number"])


def emit_ticket_updated(ticket: Dict[str, Any]) -> None:
    if publish(branch_room(ticket["branch_id"]), TICKET_UPDATED, ticket):
        logger.info(
            "Emitted %s for %s (%s)", TICKET_UPDATED, ticket["ticket_number"], ticket["status"]
        )


def emit_ticket_called(ticket: Dict[str, Any]) -> None:
    """Announce a called ticket.

    Displays only need the number and where to go, so the payload is a
    reduced projection of the ticket.  The counter's own room gets the same
    announcement.
    """
    payload = {
        "ticket_number": ticket["ticket_number"],
        "counter_name": ticket.get("counter_name"),
        "timestamp": _now(),
    }
    publish(branch_room(ticket["branch_id"]), TICKET_CALLED, payload)
    if ticket.get("counter_id"):
        publish(counter_room(ticket["counter_id"]), TICKET_CALLED, payload)
    logger.info("Emitted %s for %s", TICKET_CALLED, ticket["ticket_number"])


def emit_ticket_deleted(ticket_id: str, branch_id: Any) -> None:
    if publish(branch_room(branch_id), TICKET_DELETED, {"id": ticket_id}):
        logger.info("Emitted %s for %s", TICKET_DELETED, ticket_id)


def subscribe(rooms: Iterable[str]):
    """Return a PubSub subscribed to the given rooms, or None without Redis."""
    redis_client = get_redis()
    if redis_client is None:
        return None
    pubsub = redis_client.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe(*rooms)
    return pubsub
