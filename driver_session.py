"""Driver-side trip session: roster, live stop order and badge scanning.

The session recomputes the full stop list on every GPS fix and after every
scan. Scans go to the offline cache first, so they are visible immediately
whether or not the device is online.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from offline_cache import SCAN_ACTIONS, OfflineCache
from position_tracker import PositionTracker
from route_optimizer import (
    DriverPosition,
    OptimizedStop,
    RouteStatistics,
    SchoolLocation,
    StudentLocation,
    optimize_route,
    route_statistics,
)

DUPLICATE_SCAN_WINDOW_S = 30.0
ACTION_STATUS = {"boarding": "boarded", "dropping": "dropped"}


class BadgeError(ValueError):
    """The scanned text is not a usable student badge."""


@dataclass
class BadgeData:
    student_id: str
    student_name: str
    school_id: str
    signature: Optional[str] = None
    grade: Optional[str] = None
    bus_route: Optional[str] = None
    photo_url: Optional[str] = None


def parse_badge(qr_text: str) -> BadgeData:
    try:
        raw = json.loads(qr_text)
    except (TypeError, ValueError) as exc:
        raise BadgeError("Invalid QR code format") from exc
    if not isinstance(raw, dict):
        raise BadgeError("Invalid QR code format")
    student_id = raw.get("studentId")
    student_name = raw.get("studentName")
    school_id = raw.get("schoolId")
    if not student_id or not student_name or not school_id:
        raise BadgeError("Invalid QR code format")
    return BadgeData(
        student_id=str(student_id),
        student_name=str(student_name),
        school_id=str(school_id),
        signature=raw.get("signature"),
        grade=raw.get("grade"),
        bus_route=raw.get("busRoute"),
        photo_url=raw.get("photoUrl"),
    )


@dataclass
class ScanOutcome:
    accepted: bool
    student_id: Optional[str] = None
    student_name: Optional[str] = None
    action: Optional[str] = None
    scan_id: Optional[str] = None
    reason: Optional[str] = None
    requires_override: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "studentId": self.student_id,
            "studentName": self.student_name,
            "action": self.action,
            "scanId": self.scan_id,
            "reason": self.reason,
            "requiresOverride": self.requires_override,
        }


class DriverSession:
    def __init__(
        self,
        cache: OfflineCache,
        school: SchoolLocation,
        school_id: str,
        tracker: PositionTracker,
        trip_id: Optional[str] = None,
        route_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        duplicate_window_s: float = DUPLICATE_SCAN_WINDOW_S,
    ):
        self._cache = cache
        self._school = school
        self._school_id = school_id
        self._tracker = tracker
        self._trip_id = trip_id
        self._route_id = route_id
        self._clock = clock
        self._duplicate_window_s = duplicate_window_s
        self._last_scan_at: Dict[str, float] = {}
        self._attached = False
        self.students: List[StudentLocation] = []
        self.stops: List[OptimizedStop] = []

    def start(self) -> None:
        if not self._attached:
            self._tracker.subscribe(self._on_position)
            self._attached = True

    def stop(self) -> None:
        if self._attached:
            self._tracker.unsubscribe(self._on_position)
            self._attached = False

    def _on_position(self, position: DriverPosition) -> None:
        self.reorder()

    async def load_roster(self) -> int:
        rows = await self._cache.get_cached_students(self._school_id, self._route_id)
        self.students = [StudentLocation.from_dict(row) for row in rows]
        self.reorder()
        return len(self.students)

    def reorder(self) -> List[OptimizedStop]:
        self.stops = optimize_route(self.students, self._school, self._tracker.last_known)
        return self.stops

    def statistics(self) -> RouteStatistics:
        driver = self._tracker.last_known
        if driver is None:
            return route_statistics(self.stops)
        return route_statistics(self.stops, driver, self._school)

    async def scan_badge(self, qr_text: str, action: str, override: bool = False) -> ScanOutcome:
        try:
            badge = parse_badge(qr_text)
        except BadgeError as exc:
            return ScanOutcome(accepted=False, action=action, reason=str(exc))
        if badge.school_id != self._school_id:
            return ScanOutcome(
                accepted=False,
                student_id=badge.student_id,
                student_name=badge.student_name,
                action=action,
                reason="Student belongs to another school",
            )
        return await self.mark_student(badge.student_id, action, badge.student_name, override=override)

    async def mark_student(
        self,
        student_id: str,
        action: str,
        student_name: Optional[str] = None,
        override: bool = False,
    ) -> ScanOutcome:
        if action not in SCAN_ACTIONS:
            raise ValueError(f"invalid scan action {action!r}")
        student = self._find(student_id)
        name = student_name or (student.name if student else student_id)

        now = self._clock()
        last = self._last_scan_at.get(student_id)
        if last is not None and now - last < self._duplicate_window_s and not override:
            return ScanOutcome(
                accepted=False,
                student_id=student_id,
                student_name=name,
                action=action,
                reason=f"Recent scan detected (within {int(self._duplicate_window_s)} seconds)",
                requires_override=True,
            )

        scan_id = await self._cache.record_scan(student_id, name, action, self._trip_id)
        self._last_scan_at[student_id] = now
        status = ACTION_STATUS[action]
        await self._cache.update_student_status(student_id, status)
        if student is not None:
            student.status = status
        self.reorder()
        return ScanOutcome(
            accepted=True,
            student_id=student_id,
            student_name=name,
            action=action,
            scan_id=scan_id,
        )

    def _find(self, student_id: str) -> Optional[StudentLocation]:
        for student in self.students:
            if student.id == student_id:
                return student
        return None


__all__ = [
    "ACTION_STATUS",
    "BadgeData",
    "BadgeError",
    "DUPLICATE_SCAN_WINDOW_S",
    "DriverSession",
    "ScanOutcome",
    "parse_badge",
]
