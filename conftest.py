"""Shared fixtures.

The suite runs against a throwaway SQLite file.  Set TEST_DATABASE_URL to a
scratch Postgres database to run it, the concurrency tests included, against
real row locks instead; its tables are dropped and recreated for every test.
DATABASE_URL has to be set before ``database`` is imported, because the engine
is created at import.
"""

import json
import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="branch-queue-tests-")
os.environ["DATABASE_URL"] = os.getenv(
    "TEST_DATABASE_URL", "sqlite:///" + os.path.join(_TMP_DIR, "queue.db")
)
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from sqlmodel import Session  # noqa: E402

import database  # noqa: E402
import events  # noqa: E402
from models import Branch, Counter, Service  # noqa: E402


class RecordingRedis:
    """Stands in for the Redis client and keeps everything published."""

    def __init__(self):
        self.messages = []

    def publish(self, channel, message):
        self.messages.append((channel, json.loads(message)))
        return 1

    def published(self, channel=None, event=None):
        return [
            body
            for room, body in self.messages
            if (channel is None or room == channel) and (event is None or body["event"] == event)
        ]


@pytest.fixture(autouse=True)
def db():
    database.reset_db()
    yield


@pytest.fixture(autouse=True)
def bus(monkeypatch):
    recorder = RecordingRedis()
    monkeypatch.setattr(events, "get_redis", lambda: recorder)
    return recorder


@pytest.fixture
def seed(db):
    """Two branches, two services with prefixes, one without, three counters."""
    with Session(database.engine) as session:
        session.add_all([Branch(id="B1", name="Main Office"), Branch(id="B2", name="North")])
        session.commit()
        session.add_all(
            [
                Service(id="A", name="Payments", prefix="A"),
                Service(id="B", name="New Connections", prefix="B"),
                Service(id="X", name="General", prefix=""),
            ]
        )
        session.commit()
        session.add_all(
            [
                Counter(id="C1", name="Counter 1", branch_id="B1"),
                Counter(id="C2", name="Counter 2", branch_id="B1"),
                Counter(id="C9", name="Counter 9", branch_id="B2"),
            ]
        )
        session.commit()
