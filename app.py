"""
Routemaster Trip Service — passenger status, roster sync and parent notifications

Purpose
=======
Server side of the school-bus trip tracker. Driver devices upload scan batches
captured offline, download their roster, and parents receive inbox items and
Web Push notifications whenever a passenger's status changes.

Key features
------------
- Batch scan upload with idempotent replay (re-uploading a batch is harmless).
- Roster download scoped by school/route, merged with the trip's passenger status.
- On-write notifier: every committed passenger status write is checked for a
  meaningful transition and fanned out to linked parents.
- Stateless route ordering endpoint (farthest-from-school first).

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
import os
from pathlib import Path

from fastapi import Body, FastAPI, HTTPException, Query, Request

from inbox_store import InboxStore
from notifier import PushSender, StatusChangeNotifier
from passenger_status import PASSENGER_STATUSES, PassengerStatusStore
from push_subscriptions import PushSubscriptionStore
from route_optimizer import (
    DriverPosition,
    SchoolLocation,
    StudentLocation,
    optimize_route,
    route_statistics,
)
from school_directory import SchoolDirectory
from geo import has_valid_coordinates

# ---------------------------
# Config
# ---------------------------
# Data directories (first entry is the primary volume)
DATA_DIRS = [
    Path(p)
    for p in os.getenv("DATA_DIRS", str(Path(__file__).resolve().parent / "data")).split(":")
]
PRIMARY_DATA_DIR = DATA_DIRS[0]

PASSENGERS_PATH = Path(os.getenv("PASSENGERS_PATH", str(PRIMARY_DATA_DIR / "passengers.json")))
DIRECTORY_PATH = Path(os.getenv("DIRECTORY_PATH", str(PRIMARY_DATA_DIR / "directory.json")))
INBOX_PATH = Path(os.getenv("INBOX_PATH", str(PRIMARY_DATA_DIR / "inbox.json")))
PUSH_SUBSCRIPTIONS_PATH = Path(
    os.getenv("PUSH_SUBSCRIPTIONS_PATH", str(PRIMARY_DATA_DIR / "push_subscriptions.json"))
)

# Push notifications (Web Push)
VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:transport@example.org")
PUSH_TIMEOUT_S = float(os.getenv("PUSH_TIMEOUT_S", "10"))

# ---------------------------
# Stores & notifier wiring
# ---------------------------
passenger_store: PassengerStatusStore
school_directory: SchoolDirectory
inbox_store: InboxStore
push_subscription_store: PushSubscriptionStore
push_sender: PushSender
status_notifier: StatusChangeNotifier


def configure_stores(
    passengers_path: Path = PASSENGERS_PATH,
    directory_path: Path = DIRECTORY_PATH,
    inbox_path: Path = INBOX_PATH,
    push_subscriptions_path: Path = PUSH_SUBSCRIPTIONS_PATH,
) -> None:
    """(Re)build the stores and register the notifier on passenger writes."""
    global passenger_store, school_directory, inbox_store
    global push_subscription_store, push_sender, status_notifier
    passenger_store = PassengerStatusStore(passengers_path)
    school_directory = SchoolDirectory(directory_path)
    inbox_store = InboxStore(inbox_path)
    push_subscription_store = PushSubscriptionStore(push_subscriptions_path)
    push_sender = PushSender(
        push_subscription_store,
        vapid_private_key=VAPID_PRIVATE_KEY,
        vapid_subject=VAPID_SUBJECT,
        timeout=PUSH_TIMEOUT_S,
    )
    status_notifier = StatusChangeNotifier(school_directory, inbox_store, push_sender)
    passenger_store.on_write(status_notifier.handle)


configure_stores()

# ---------------------------
# App
# ---------------------------
app = FastAPI(title="Routemaster Trip Service")


@app.on_event("startup")
async def report_configuration() -> None:
    if not VAPID_PUBLIC_KEY or not VAPID_PRIVATE_KEY:
        print("[startup] VAPID keys not configured, push delivery disabled (inbox only)")
    print(f"[startup] data directory {PRIMARY_DATA_DIR}")


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise HTTPException(status_code=400, detail=f"Missing {key}")
    return value.strip()


# ---------------------------
# REST: Driver sync
# ---------------------------
@app.post("/v1/scans")
async def upload_scans(payload: Dict[str, Any] = Body(...)):
    """Apply an uploaded scan batch. The batch is committed as one write."""
    school_id = _require_str(payload, "schoolId")
    scans = payload.get("scans")
    if not isinstance(scans, list):
        raise HTTPException(status_code=400, detail="scans must be a list")
    result = await passenger_store.apply_scans(scans, default_school_id=school_id)
    return result.to_dict()


@app.get("/v1/schools/{school_id}/roster")
async def school_roster(
    school_id: str,
    route_id: Optional[str] = Query(None, alias="routeId"),
    trip_id: Optional[str] = Query(None, alias="tripId"),
):
    students = await school_directory.students_for(school_id, route_id)
    statuses: Dict[str, str] = {}
    if trip_id:
        for record in await passenger_store.list_trip(trip_id):
            statuses[record.student_id] = record.status
    for row in students:
        row["status"] = statuses.get(row["studentId"], "pending")
    return {"schoolId": school_id, "routeId": route_id, "tripId": trip_id, "students": students}


# ---------------------------
# REST: Passenger status
# ---------------------------
@app.get("/v1/trips/{trip_id}/passengers")
async def list_passengers(trip_id: str):
    records = await passenger_store.list_trip(trip_id)
    return {"tripId": trip_id, "passengers": [record.to_dict() for record in records]}


@app.put("/v1/trips/{trip_id}/passengers/{student_id}")
async def set_passenger_status(trip_id: str, student_id: str, payload: Dict[str, Any] = Body(...)):
    status = payload.get("status")
    if status not in PASSENGER_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status")
    school_id = payload.get("schoolId")
    student_doc = await school_directory.get_student(student_id)
    if not school_id and student_doc:
        school_id = student_doc.get("schoolId")
    change = await passenger_store.set_status(
        trip_id,
        student_id,
        status,
        school_id=school_id,
        student_name=payload.get("studentName"),
    )
    return {"passenger": change.after.to_dict() if change.after else None}


@app.delete("/v1/trips/{trip_id}/passengers/{student_id}")
async def delete_passenger(trip_id: str, student_id: str):
    change = await passenger_store.delete(trip_id, student_id)
    if change is None:
        raise HTTPException(status_code=404, detail="passenger not found")
    return {"deleted": True}


@app.post("/v1/trips/{trip_id}/seed")
async def seed_trip(trip_id: str, payload: Dict[str, Any] = Body(...)):
    """Create pending passenger rows for a route's students. Safe to call repeatedly."""
    school_id = _require_str(payload, "schoolId")
    route_id = payload.get("routeId")
    students = await school_directory.students_for(school_id, route_id)
    created = await passenger_store.seed_trip(trip_id, school_id, students)
    return {"tripId": trip_id, "created": created}


# ---------------------------
# REST: Parent inbox
# ---------------------------
@app.get("/v1/users/{user_id}/inbox")
async def user_inbox(user_id: str, unread_only: bool = Query(False, alias="unreadOnly")):
    items = await inbox_store.list_inbox(user_id, unread_only=unread_only)
    return {"userId": user_id, "items": items}


@app.post("/v1/users/{user_id}/inbox/{note_id}/read")
async def mark_inbox_read(user_id: str, note_id: str):
    found = await inbox_store.mark_read(user_id, note_id)
    if not found:
        raise HTTPException(status_code=404, detail="notification not found")
    return {"read": True}


# ---------------------------
# REST: Push subscriptions
# ---------------------------
@app.get("/api/push/vapid-public-key")
async def get_vapid_public_key():
    """Return the VAPID public key for push subscription."""
    if not VAPID_PUBLIC_KEY:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    return {"publicKey": VAPID_PUBLIC_KEY}


@app.post("/v1/users/{user_id}/push/subscribe")
async def push_subscribe(user_id: str, request: Request):
    """Register one of a user's devices for push notifications."""
    data = await request.json()
    endpoint = data.get("endpoint")
    keys = data.get("keys", {})
    if not endpoint or not isinstance(keys, dict) or not keys.get("p256dh") or not keys.get("auth"):
        raise HTTPException(status_code=400, detail="Invalid subscription data")
    user_agent = request.headers.get("user-agent")
    is_new = await push_subscription_store.add_subscription(user_id, endpoint, keys, user_agent)
    return {"status": "subscribed", "new": is_new}


@app.post("/v1/users/{user_id}/push/unsubscribe")
async def push_unsubscribe(user_id: str, request: Request):
    """Unregister one of a user's devices."""
    data = await request.json()
    endpoint = data.get("endpoint")
    if not endpoint:
        raise HTTPException(status_code=400, detail="Missing endpoint")
    removed = await push_subscription_store.remove_subscription(user_id, endpoint)
    return {"status": "unsubscribed", "found": removed}


# ---------------------------
# REST: Route ordering
# ---------------------------
def _school_from_payload(raw: Any) -> SchoolLocation:
    if not isinstance(raw, dict) or not has_valid_coordinates(raw.get("latitude"), raw.get("longitude")):
        raise HTTPException(status_code=400, detail="Invalid school location")
    return SchoolLocation(latitude=float(raw["latitude"]), longitude=float(raw["longitude"]))


def _driver_from_payload(raw: Any) -> Optional[DriverPosition]:
    if not isinstance(raw, dict) or not has_valid_coordinates(raw.get("latitude"), raw.get("longitude")):
        return None
    return DriverPosition(
        latitude=float(raw["latitude"]),
        longitude=float(raw["longitude"]),
        accuracy=raw.get("accuracy"),
        heading=raw.get("heading"),
        speed=raw.get("speed"),
    )


@app.post("/v1/route/optimize")
async def optimize(payload: Dict[str, Any] = Body(...)):
    school = _school_from_payload(payload.get("school"))
    driver = _driver_from_payload(payload.get("driver"))
    raw_students = payload.get("students") or []
    if not isinstance(raw_students, list):
        raise HTTPException(status_code=400, detail="students must be a list")
    students: List[StudentLocation] = [
        StudentLocation.from_dict(row) for row in raw_students if isinstance(row, dict)
    ]
    stops = optimize_route(students, school, driver)
    if driver is not None:
        stats = route_statistics(stops, driver, school)
    else:
        stats = route_statistics(stops)
    return {"stops": [stop.to_dict() for stop in stops], "statistics": stats.to_dict()}
