import asyncio
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import app as app_module  # noqa: E402

BASE_MS = 1_700_000_000_000


@pytest.fixture
def client(tmp_path):
    app_module.configure_stores(
        passengers_path=tmp_path / "passengers.json",
        directory_path=tmp_path / "directory.json",
        inbox_path=tmp_path / "inbox.json",
        push_subscriptions_path=tmp_path / "subs.json",
    )
    directory = app_module.school_directory
    asyncio.run(
        directory.upsert_student(
            "s1",
            {"schoolId": "sch1", "routeId": "r1", "name": "Ali", "latitude": 40.2, "longitude": -74.0},
        )
    )
    asyncio.run(
        directory.upsert_student(
            "s2",
            {"schoolId": "sch1", "routeId": "r1", "name": "Sara", "latitude": 40.05, "longitude": -74.0},
        )
    )
    asyncio.run(directory.link_parent("p1", "sch1", ["s1"]))
    with TestClient(app_module.app) as test_client:
        yield test_client


def _scan(scan_id, student_id, action, offset_ms):
    return {
        "id": scan_id,
        "studentId": student_id,
        "studentName": student_id,
        "action": action,
        "timestamp": BASE_MS + offset_ms,
        "tripId": "trip-1",
        "synced": False,
    }


def test_scan_upload_reaches_parent_inbox(client):
    batch = {"schoolId": "sch1", "scans": [_scan("s1-1", "s1", "boarding", 0), _scan("s2-1", "s2", "boarding", 5)]}
    resp = client.post("/v1/scans", json=batch)
    assert resp.status_code == 200
    assert resp.json() == {"applied": 2, "skipped": 0}

    replay = client.post("/v1/scans", json=batch)
    assert replay.json() == {"applied": 0, "skipped": 2}

    inbox = client.get("/v1/users/p1/inbox").json()
    assert [item["body"] for item in inbox["items"]] == ["Ali is boarded."]
    note_id = inbox["items"][0]["id"]

    assert client.post(f"/v1/users/p1/inbox/{note_id}/read").status_code == 200
    assert client.get("/v1/users/p1/inbox", params={"unreadOnly": "true"}).json()["items"] == []
    assert client.post("/v1/users/p1/inbox/missing/read").status_code == 404


def test_scan_upload_validation(client):
    assert client.post("/v1/scans", json={"scans": []}).status_code == 400
    assert client.post("/v1/scans", json={"schoolId": "sch1", "scans": "nope"}).status_code == 400


def test_roster_merges_trip_status(client):
    client.post("/v1/scans", json={"schoolId": "sch1", "scans": [_scan("s1-1", "s1", "boarding", 0)]})
    body = client.get("/v1/schools/sch1/roster", params={"routeId": "r1", "tripId": "trip-1"}).json()
    statuses = {row["studentId"]: row["status"] for row in body["students"]}
    assert statuses == {"s1": "boarded", "s2": "pending"}
    assert body["students"][0]["studentName"] == "Ali"


def test_passenger_crud_and_seed(client):
    seeded = client.post("/v1/trips/trip-2/seed", json={"schoolId": "sch1", "routeId": "r1"})
    assert seeded.json() == {"tripId": "trip-2", "created": 2}

    resp = client.put("/v1/trips/trip-2/passengers/s1", json={"status": "absent"})
    assert resp.status_code == 200
    assert resp.json()["passenger"]["status"] == "absent"
    assert client.put("/v1/trips/trip-2/passengers/s1", json={"status": "lost"}).status_code == 400

    passengers = client.get("/v1/trips/trip-2/passengers").json()["passengers"]
    assert [(p["studentId"], p["status"]) for p in passengers] == [("s1", "absent"), ("s2", "pending")]

    inbox = client.get("/v1/users/p1/inbox").json()["items"]
    assert [item["title"] for item in inbox] == ["Marked Absent 🚫"]

    assert client.delete("/v1/trips/trip-2/passengers/s1").json() == {"deleted": True}
    assert client.delete("/v1/trips/trip-2/passengers/s1").status_code == 404


def test_put_uses_directory_school_for_new_rows(client):
    client.put("/v1/trips/trip-3/passengers/s1", json={"status": "boarded"})
    items = client.get("/v1/users/p1/inbox").json()["items"]
    assert [item["title"] for item in items] == ["On Bus 🚌"]


def test_push_subscription_endpoints(client, monkeypatch):
    assert client.get("/api/push/vapid-public-key").status_code in (200, 503)
    monkeypatch.setattr(app_module, "VAPID_PUBLIC_KEY", "public-key")
    assert client.get("/api/push/vapid-public-key").json() == {"publicKey": "public-key"}

    sub = {"endpoint": "https://push/p1", "keys": {"p256dh": "pub", "auth": "secret"}}
    assert client.post("/v1/users/p1/push/subscribe", json=sub).json() == {"status": "subscribed", "new": True}
    assert client.post("/v1/users/p1/push/subscribe", json=sub).json()["new"] is False
    assert client.post("/v1/users/p1/push/subscribe", json={"endpoint": "x"}).status_code == 400

    removed = client.post("/v1/users/p1/push/unsubscribe", json={"endpoint": "https://push/p1"})
    assert removed.json() == {"status": "unsubscribed", "found": True}
    assert client.post("/v1/users/p1/push/unsubscribe", json={}).status_code == 400


def test_route_optimize_endpoint(client):
    payload = {
        "school": {"latitude": 40.0, "longitude": -74.0},
        "driver": {"latitude": 40.05, "longitude": -74.0},
        "students": [
            {"studentId": "a", "studentName": "A", "latitude": 40.01, "longitude": -74.0},
            {"studentId": "b", "studentName": "B", "latitude": 40.1, "longitude": -74.0},
            {"studentId": "c", "studentName": "C"},
        ],
    }
    body = client.post("/v1/route/optimize", json=payload).json()
    assert [stop["studentId"] for stop in body["stops"]] == ["b", "a"]
    assert [stop["order"] for stop in body["stops"]] == [1, 2]
    assert body["statistics"]["totalStops"] == 2
    assert body["stops"][0]["distanceFromDriver"] is not None

    bad = client.post("/v1/route/optimize", json={"school": {"latitude": 999, "longitude": 0}, "students": []})
    assert bad.status_code == 400
