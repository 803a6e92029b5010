"""Calls API"""

import pytest
from fastapi import WebSocketDisconnect


@pytest.fixture
def medical_type(client, auth_headers):
    from database import SessionLocal
    from models import CallType

    session = SessionLocal()
    try:
        return session.query(CallType.id).filter(CallType.name == "Medical Emergency").scalar()
    finally:
        session.close()


@pytest.fixture
def units_by_number(client, auth_headers):
    response = client.get("/api/units", headers=auth_headers)
    assert response.status_code == 200
    return {u["unit_number"]: u["id"] for u in response.json()}


def _create(client, headers, call_type_id, **extra):
    payload = {
        "call_type_id": call_type_id,
        "priority": 3,
        "description": "Camper with bee sting",
        "location": {"latitude": 40.1, "longitude": -75.4, "address": "Archery Range"},
        "caller": {"name": "Counselor Ray", "phone": "555-0188"},
    }
    payload.update(extra)
    return client.post("/api/calls", json=payload, headers=headers)


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json()["service"] == "CampCAD API"


def test_requires_token(client):
    assert client.get("/api/calls").status_code == 401
    assert client.get("/api/calls", headers={"Authorization": "Bearer not-a-token"}).status_code == 401


def test_create_call(client, auth_headers, medical_type, units_by_number):
    response = _create(client, auth_headers, medical_type, assigned_units=[units_by_number["MED-1"]])

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"
    assert body["call_number"].endswith("-1")
    assert body["call_type_name"] == "Medical Emergency"
    assert body["location"]["address"] == "Archery Range"
    assert body["caller"]["name"] == "Counselor Ray"
    assert body["caller"]["is_anonymous"] is False
    assert body["assigned_units"] == [units_by_number["MED-1"]]
    assert body["units"][0]["unit_number"] == "MED-1"
    assert body["dispatcher_name"] == "Dispatcher Lee"


def test_create_validation_error_shape(client, auth_headers):
    response = client.post("/api/calls", json={}, headers=auth_headers)

    assert response.status_code == 400
    body = response.json()
    assert body["errors"] == ["Call type is required", "Priority is required", "Description is required"]
    assert body["detail"].startswith("Invalid call: ")


def test_get_missing_call(client, auth_headers):
    response = client.get("/api/calls/99999", headers=auth_headers)
    assert response.status_code == 404
    assert response.json() == {"detail": "Call 99999 not found", "errors": []}


def test_patch_and_details(client, auth_headers, medical_type):
    call = _create(client, auth_headers, medical_type).json()

    response = client.patch(f"/api/calls/{call['id']}", json={"priority": 1}, headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["priority"] == 1

    details = client.get(f"/api/calls/{call['id']}/details", headers=auth_headers).json()
    assert [t["description"] for t in details["timeline"]] == ["Priority changed.", "Call created"]
    assert details["timeline"][0]["fields_changed"] == {"priority": {"old": 3, "new": 1}}
    assert details["timeline"][0]["actor_id"] == 7


def test_patch_only_sent_fields(client, auth_headers, medical_type):
    call = _create(client, auth_headers, medical_type).json()

    response = client.patch(f"/api/calls/{call['id']}", json={"location": {"address": "Archery Range"}},
                            headers=auth_headers)

    assert response.status_code == 200
    details = client.get(f"/api/calls/{call['id']}/details", headers=auth_headers).json()
    assert len(details["timeline"]) == 1


def test_status_transition_conflict(client, auth_headers, medical_type):
    call = _create(client, auth_headers, medical_type).json()
    client.post(f"/api/calls/{call['id']}/close", headers=auth_headers)

    response = client.patch(f"/api/calls/{call['id']}/status", json={"status": "pending"}, headers=auth_headers)

    assert response.status_code == 409
    assert "cleared" in response.json()["detail"]


def test_close_with_notes_and_twice(client, auth_headers, medical_type, units_by_number):
    call = _create(client, auth_headers, medical_type, assigned_units=[units_by_number["MED-2"]]).json()

    response = client.post(f"/api/calls/{call['id']}/close", json={"notes": "Ice pack applied"},
                           headers=auth_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "cleared"
    assert body["assigned_units"] == []
    assert body["closed_at"] is not None

    unit = client.get(f"/api/units/{units_by_number['MED-2']}", headers=auth_headers).json()
    assert unit["status"] == "available"

    again = client.post(f"/api/calls/{call['id']}/close", headers=auth_headers)
    assert again.status_code == 409
    assert again.json()["detail"] == "Call is already closed"


def test_assign_and_release_units(client, auth_headers, medical_type, units_by_number):
    call = _create(client, auth_headers, medical_type).json()
    fire1 = units_by_number["FIRE-1"]

    response = client.post(f"/api/calls/{call['id']}/units", json={"unit_ids": [fire1]}, headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["assigned_units"] == [fire1]

    response = client.delete(f"/api/calls/{call['id']}/units/{fire1}", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["assigned_units"] == []


def test_assign_requires_unit_ids(client, auth_headers, medical_type):
    call = _create(client, auth_headers, medical_type).json()
    response = client.post(f"/api/calls/{call['id']}/units", json={"unit_ids": []}, headers=auth_headers)
    assert response.status_code == 422


def test_search_and_active(client, auth_headers, medical_type):
    first = _create(client, auth_headers, medical_type, priority=4).json()
    second = _create(client, auth_headers, medical_type, priority=1).json()
    third = _create(client, auth_headers, medical_type, priority=2).json()
    client.post(f"/api/calls/{third['id']}/close", headers=auth_headers)

    body = client.get("/api/calls", params={"limit": 2}, headers=auth_headers).json()
    assert body["total"] == 3
    assert [c["id"] for c in body["calls"]] == [third["id"], second["id"]]

    body = client.get("/api/calls", params=[("priority", 1), ("priority", 4)], headers=auth_headers).json()
    assert body["total"] == 2

    body = client.get("/api/calls", params={"status": "cleared"}, headers=auth_headers).json()
    assert [c["id"] for c in body["calls"]] == [third["id"]]

    active = client.get("/api/calls/active", headers=auth_headers).json()
    assert [c["id"] for c in active] == [second["id"], first["id"]]

    stats = client.get("/api/calls/stats", headers=auth_headers).json()
    assert stats["total_calls"] == 3
    assert stats["active_calls"] == 2
    assert stats["emergency_calls"] == 1


def test_reconcile_endpoint(client, auth_headers, medical_type):
    call = _create(client, auth_headers, medical_type).json()
    response = client.post(f"/api/calls/{call['id']}/reconcile-units", headers=auth_headers)
    assert response.status_code == 200
    assert response.json() == {"call_id": call["id"], "repaired": False, "repairs": []}


def test_websocket_rejects_missing_token(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws/calls") as ws:
            ws.receive_json()
    assert exc.value.code == 4001


def test_websocket_receives_changes(client, auth_headers, medical_type):
    from jwt_auth import create_access_token

    token = create_access_token(user_id=7, name="Dispatcher Lee")
    with client.websocket_connect(f"/ws/calls?token={token}") as ws:
        assert ws.receive_json()["type"] == "connected"

        call = _create(client, auth_headers, medical_type).json()

        message = ws.receive_json()
        assert message["type"] == "calls:update"
        assert message["entity_id"] == call["id"]
        assert message["change_kind"] == "created"
