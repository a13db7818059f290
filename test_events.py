import redis

import events


class FailingRedis:
    def publish(self, channel, message):
        raise redis.ConnectionError("connection refused")


class FakePubSub:
    def __init__(self):
        self.channels = []

    def subscribe(self, *channels):
        self.channels.extend(channels)


class SubscribableRedis:
    def __init__(self):
        self.pubsub_kwargs = None
        self.last = None

    def pubsub(self, **kwargs):
        self.pubsub_kwargs = kwargs
        self.last = FakePubSub()
        return self.last


def test_room_names():
    assert events.branch_room("B1") == "branch:B1"
    assert events.counter_room(7) == "counter:7"


def test_publish_envelope(bus):
    assert events.publish("branch:B1", "ticket:created", {"id": "t1"})

    (room, body), = bus.messages
    assert room == "branch:B1"
    assert body["event"] == "ticket:created"
    assert body["data"] == {"id": "t1"}
    assert body["timestamp"]


def test_publish_without_redis_is_a_no_op(monkeypatch):
    monkeypatch.setattr(events, "get_redis", lambda: None)
    assert events.publish("branch:B1", "ticket:created", {"id": "t1"}) is False


def test_publish_survives_redis_errors(monkeypatch):
    monkeypatch.setattr(events, "get_redis", lambda: FailingRedis())
    assert events.publish("branch:B1", "ticket:created", {"id": "t1"}) is False


def test_called_without_counter_only_reaches_branch(bus):
    events.emit_ticket_called(
        {"ticket_number": "A-001", "counter_name": None, "counter_id": None, "branch_id": "B1"}
    )
    assert [room for room, _ in bus.messages] == ["branch:B1"]


def test_subscribe_joins_rooms(monkeypatch):
    client = SubscribableRedis()
    monkeypatch.setattr(events, "get_redis", lambda: client)

    pubsub = events.subscribe(["branch:B1", "counter:C1"])

    assert pubsub is client.last
    assert pubsub.channels == ["branch:B1", "counter:C1"]
    assert client.pubsub_kwargs == {"ignore_subscribe_messages": True}


def test_subscribe_without_redis(monkeypatch):
    monkeypatch.setattr(events, "get_redis", lambda: None)
    assert events.subscribe(["branch:B1"]) is None
