import asyncio
import json
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from driver_session import BadgeError, DriverSession, parse_badge  # noqa: E402
from offline_cache import OfflineCache  # noqa: E402
from position_tracker import PositionTracker  # noqa: E402
from route_optimizer import SchoolLocation  # noqa: E402

SCHOOL = SchoolLocation(latitude=40.0, longitude=-74.0)
ROSTER = [
    {"studentId": "near", "studentName": "Nia", "latitude": 40.05, "longitude": -74.0},
    {"studentId": "far", "studentName": "Finn", "latitude": 40.2, "longitude": -74.0},
    {"studentId": "nowhere", "studentName": "Noa"},
]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _badge(student_id="far", name="Finn", school_id="sch1"):
    return json.dumps({"studentId": student_id, "studentName": name, "schoolId": school_id})


def _session(tmp_path, clock=None):
    clock = clock or FakeClock()
    cache = OfflineCache(tmp_path / "cache.json", clock=clock)
    asyncio.run(cache.cache_students(ROSTER, "sch1"))
    tracker = PositionTracker(clock=clock)
    session = DriverSession(cache, SCHOOL, "sch1", tracker, trip_id="trip-1", clock=clock)
    asyncio.run(session.load_roster())
    return session, cache, tracker, clock


def test_parse_badge_requires_identity_fields():
    badge = parse_badge(json.dumps({"studentId": "s1", "studentName": "Ali", "schoolId": "sch1", "busRoute": "7"}))
    assert (badge.student_id, badge.bus_route) == ("s1", "7")
    for bad in ("not json", "[1, 2]", json.dumps({"studentId": "s1", "schoolId": "sch1"})):
        with pytest.raises(BadgeError):
            parse_badge(bad)


def test_roster_orders_farthest_first(tmp_path):
    session, _, _, _ = _session(tmp_path)
    assert len(session.students) == 3
    assert [stop.student.id for stop in session.stops] == ["far", "near"]
    assert [stop.order for stop in session.stops] == [1, 2]


def test_gps_fix_annotates_without_reordering(tmp_path):
    session, _, tracker, _ = _session(tmp_path)
    session.start()
    tracker.update(40.05, -74.0)
    assert [stop.student.id for stop in session.stops] == ["far", "near"]
    assert session.stops[1].distance_from_driver == pytest.approx(0.0, abs=1e-6)
    stats = session.statistics()
    assert stats.total_stops == 2

    session.stop()
    tracker.update(40.2, -74.0)
    assert session.stops[0].distance_from_driver != pytest.approx(0.0, abs=1e-6)


def test_scan_records_offline_and_updates_status(tmp_path):
    session, cache, _, _ = _session(tmp_path)
    outcome = asyncio.run(session.scan_badge(_badge(), "boarding"))
    assert outcome.accepted
    assert outcome.to_dict()["scanId"] == outcome.scan_id

    pending = asyncio.run(cache.get_unsynced_scans())
    assert [(s.id, s.student_id, s.action, s.trip_id) for s in pending] == [
        (outcome.scan_id, "far", "boarding", "trip-1")
    ]
    assert asyncio.run(cache.get_student("far"))["status"] == "boarded"
    assert session.stops[0].student.status == "boarded"
    assert session.statistics().completed_stops == 1


def test_duplicate_scan_needs_override(tmp_path):
    session, cache, _, clock = _session(tmp_path)
    asyncio.run(session.mark_student("near", "boarding"))
    clock.now += 10
    repeat = asyncio.run(session.mark_student("near", "dropping"))
    assert not repeat.accepted
    assert repeat.requires_override

    forced = asyncio.run(session.mark_student("near", "dropping", override=True))
    assert forced.accepted
    clock.now += 31
    later = asyncio.run(session.mark_student("near", "boarding"))
    assert later.accepted
    assert len(asyncio.run(cache.get_unsynced_scans())) == 3


def test_foreign_or_broken_badges_are_rejected(tmp_path):
    session, cache, _, _ = _session(tmp_path)
    foreign = asyncio.run(session.scan_badge(_badge(school_id="other"), "boarding"))
    assert not foreign.accepted
    assert foreign.reason == "Student belongs to another school"
    broken = asyncio.run(session.scan_badge("{", "boarding"))
    assert broken.reason == "Invalid QR code format"
    assert asyncio.run(cache.get_unsynced_scans()) == []


def test_unknown_action_raises(tmp_path):
    session, _, _, _ = _session(tmp_path)
    with pytest.raises(ValueError):
        asyncio.run(session.mark_student("near", "waving"))
