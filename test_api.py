import pytest
from fastapi.testclient import TestClient

import events
import main
import services


@pytest.fixture
def client():
    return TestClient(main.app)


def _issue(client, service_id="A", branch_id="B1", **extra):
    response = client.post(
        "/api/tickets", json={"service_id": service_id, "branch_id": branch_id, **extra}
    )
    assert response.status_code == 201, response.text
    return response.json()["ticket"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_create_ticket(client, seed):
    response = client.post(
        "/api/tickets",
        json={"service_id": "A", "branch_id": "B1", "customer_name": "Ana"},
        headers={"X-User-Id": "kiosk-1"},
    )

    assert response.status_code == 201
    ticket = response.json()["ticket"]
    assert ticket["ticket_number"] == "A-001"
    assert ticket["status"] == "waiting"
    assert ticket["issued_by"] == "kiosk-1"
    assert ticket["service"] == {"name": "Payments", "prefix": "A"}
    assert ticket["branch_name"] == "Main Office"


def test_create_requires_service_and_branch(client, seed):
    response = client.post("/api/tickets", json={"branch_id": "B1"})
    assert response.status_code == 400
    assert response.json()["detail"] == "service_id and branch_id are required"


def test_create_with_unknown_service(client, seed):
    response = client.post("/api/tickets", json={"service_id": "nope", "branch_id": "B1"})
    assert response.status_code == 404


def test_create_failure_is_generic_and_retryable(client, seed, monkeypatch):
    def broken_insert(cur, ticket):
        raise RuntimeError("lost connection")

    original = services._insert_ticket
    monkeypatch.setattr(services, "_insert_ticket", broken_insert)
    response = client.post("/api/tickets", json={"service_id": "A", "branch_id": "B1"})
    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to create ticket"

    monkeypatch.setattr(services, "_insert_ticket", original)
    assert _issue(client)["ticket_number"] == "A-001"


def test_call_next_scenario(client, seed):
    for expected in ("A-001", "A-002", "A-003"):
        assert _issue(client)["ticket_number"] == expected

    for expected in ("A-001", "A-002", "A-003"):
        response = client.post("/api/tickets/call-next", json={"counter_id": "C1"})
        assert response.status_code == 200
        ticket = response.json()["ticket"]
        assert ticket["ticket_number"] == expected
        assert ticket["status"] == "serving"

    response = client.post("/api/tickets/call-next", json={"counter_id": "C1"})
    assert response.status_code == 200
    assert response.json() == {"ticket": None, "message": "No tickets in queue"}


def test_call_next_with_service_filter(client, seed):
    _issue(client, service_id="A")
    b = _issue(client, service_id="B")

    response = client.post("/api/tickets/call-next", json={"counter_id": "C2", "service_id": "B"})
    assert response.json()["ticket"]["id"] == b["id"]


def test_call_next_requires_a_known_counter(client, seed):
    assert client.post("/api/tickets/call-next", json={}).status_code == 400
    assert client.post("/api/tickets/call-next", json={"counter_id": "nope"}).status_code == 404


def test_patch_finishes_ticket(client, seed):
    ticket = _issue(client)
    client.post("/api/tickets/call-next", json={"counter_id": "C1"})

    response = client.patch(
        f"/api/tickets/{ticket['id']}", json={"status": "done"}, headers={"X-User-Id": "staff-9"}
    )

    assert response.status_code == 200
    body = response.json()["ticket"]
    assert body["status"] == "done"
    assert body["served_by"] == "staff-9"


def test_patch_rejects_bad_transitions(client, seed):
    ticket = _issue(client)

    assert client.patch(f"/api/tickets/{ticket['id']}", json={"status": "done"}).status_code == 409
    assert client.patch(f"/api/tickets/{ticket['id']}", json={}).status_code == 400
    assert client.patch(f"/api/tickets/{ticket['id']}", json={"status": "lost"}).status_code == 422
    assert client.patch("/api/tickets/missing", json={"status": "done"}).status_code == 404


def test_delete_cancels(client, seed, bus):
    ticket = _issue(client)

    response = client.delete(f"/api/tickets/{ticket['id']}")
    assert response.status_code == 200
    assert response.json() == {"success": True}

    stored = client.get(f"/api/tickets/{ticket['id']}").json()["ticket"]
    assert stored["status"] == "cancelled"
    assert len(bus.published("branch:B1", "ticket:deleted")) == 1

    assert client.delete(f"/api/tickets/{ticket['id']}").status_code == 409
    assert client.delete("/api/tickets/missing").status_code == 404


def test_delete_serving_ticket_records_staff(client, seed):
    ticket = _issue(client)
    client.post("/api/tickets/call-next", json={"counter_id": "C1"})

    response = client.delete(f"/api/tickets/{ticket['id']}", headers={"X-User-Id": "staff-1"})
    assert response.status_code == 200

    stored = client.get(f"/api/tickets/{ticket['id']}").json()["ticket"]
    assert stored["status"] == "cancelled"
    assert stored["served_by"] == "staff-1"


def test_patch_unknown_counter(client, seed):
    ticket = _issue(client)

    response = client.patch(f"/api/tickets/{ticket['id']}", json={"counter_id": "nope"})

    assert response.status_code == 404
    assert response.json()["detail"] == "Counter nope not found"


def test_get_unknown_ticket(client, seed):
    assert client.get("/api/tickets/missing").status_code == 404


def test_list_filters(client, seed):
    first = _issue(client, service_id="A")
    _issue(client, service_id="B")
    _issue(client, branch_id="B2")
    client.post("/api/tickets/call-next", json={"counter_id": "C1"})

    everything = client.get("/api/tickets").json()["tickets"]
    assert len(everything) == 3

    serving = client.get("/api/tickets", params={"branch_id": "B1", "status": "serving"}).json()
    assert [t["id"] for t in serving["tickets"]] == [first["id"]]

    both = client.get("/api/tickets", params={"branch_id": "B1", "status": "waiting,serving"})
    assert len(both.json()["tickets"]) == 2

    oldest_first = client.get("/api/tickets", params={"sort": "created_at:asc"}).json()["tickets"]
    assert oldest_first[0]["id"] == first["id"]

    limited = client.get("/api/tickets", params={"limit": 1}).json()["tickets"]
    assert len(limited) == 1

    assert client.get("/api/tickets", params={"status": "lost"}).status_code == 400


def test_list_by_day(client, seed):
    ticket = _issue(client)
    today = ticket["created_at"][:10]

    assert len(client.get("/api/tickets", params={"date": today}).json()["tickets"]) == 1
    assert client.get("/api/tickets", params={"date": "2000-01-01"}).json()["tickets"] == []


def test_events_need_a_room(client):
    assert client.get("/api/events").status_code == 400


def test_events_unavailable_without_redis(client, monkeypatch):
    monkeypatch.setattr(events, "get_redis", lambda: None)
    assert client.get("/api/events", params={"branch_id": "B1"}).status_code == 503
