"""Stop ordering for a single bus run.

Stops are ordered farthest-from-school first so the run follows the fixed
pattern driver -> farthest student -> ... -> nearest student -> school.
The driver's position only annotates each stop with a distance; it never
changes the order, so the list does not reshuffle while the bus moves.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from geo import distance, has_valid_coordinates

STUDENT_STATUSES = ("pending", "boarded", "dropped", "absent")
AVERAGE_SPEED_KMH = 30.0


@dataclass
class StudentLocation:
    id: str
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: str = "pending"
    photo_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StudentLocation":
        student_id = data.get("studentId") or data.get("id") or ""
        status = data.get("status") or "pending"
        if status not in STUDENT_STATUSES:
            status = "pending"
        return cls(
            id=str(student_id),
            name=str(data.get("studentName") or data.get("name") or student_id),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            status=status,
            photo_url=data.get("photoUrl"),
        )

    def has_coordinates(self) -> bool:
        return has_valid_coordinates(self.latitude, self.longitude)


@dataclass
class SchoolLocation:
    latitude: float
    longitude: float


@dataclass
class DriverPosition:
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    timestamp: Optional[datetime] = None


@dataclass
class OptimizedStop:
    student: StudentLocation
    distance_from_school: float
    order: int = 0
    distance_from_driver: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order,
            "studentId": self.student.id,
            "studentName": self.student.name,
            "status": self.student.status,
            "latitude": self.student.latitude,
            "longitude": self.student.longitude,
            "distanceFromSchool": self.distance_from_school,
            "distanceFromDriver": self.distance_from_driver,
        }


@dataclass
class RouteStatistics:
    total_stops: int
    completed_stops: int
    pending_stops: int
    absent_stops: int
    total_distance: float
    estimated_time: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalStops": self.total_stops,
            "completedStops": self.completed_stops,
            "pendingStops": self.pending_stops,
            "absentStops": self.absent_stops,
            "totalDistance": self.total_distance,
            "estimatedTime": self.estimated_time,
        }


def optimize_route(
    students: Sequence[StudentLocation],
    school: SchoolLocation,
    driver: Optional[DriverPosition] = None,
) -> List[OptimizedStop]:
    """Return a fresh, fully numbered stop list for ``students``.

    Students without usable coordinates are skipped. Ties on distance keep
    their input order.
    """
    stops: List[OptimizedStop] = []
    for student in students:
        if not student.has_coordinates():
            continue
        lat = float(student.latitude)
        lon = float(student.longitude)
        stop = OptimizedStop(
            student=student,
            distance_from_school=distance(school.latitude, school.longitude, lat, lon),
        )
        if driver is not None and has_valid_coordinates(driver.latitude, driver.longitude):
            stop.distance_from_driver = distance(driver.latitude, driver.longitude, lat, lon)
        stops.append(stop)

    # list.sort is stable, reverse=True keeps ties in input order
    stops.sort(key=lambda s: s.distance_from_school, reverse=True)
    for index, stop in enumerate(stops):
        stop.order = index + 1
    return stops


def _leg(a: StudentLocation, b: StudentLocation) -> float:
    return distance(float(a.latitude), float(a.longitude), float(b.latitude), float(b.longitude))


def total_route_distance(stops: Sequence[OptimizedStop]) -> float:
    """Approximate run length in km: first stop to school plus every leg between stops."""
    if not stops:
        return 0.0
    if len(stops) == 1:
        return stops[0].distance_from_school
    total = stops[0].distance_from_school
    for current, nxt in zip(stops, stops[1:]):
        total += _leg(current.student, nxt.student)
    return total


def total_route_distance_with_driver(
    stops: Sequence[OptimizedStop],
    driver: DriverPosition,
    school: SchoolLocation,
) -> float:
    """Driver -> each stop in order -> school, in km."""
    if not stops:
        return 0.0
    total = 0.0
    lat, lon = driver.latitude, driver.longitude
    for stop in stops:
        s_lat = float(stop.student.latitude)
        s_lon = float(stop.student.longitude)
        total += distance(lat, lon, s_lat, s_lon)
        lat, lon = s_lat, s_lon
    total += distance(lat, lon, school.latitude, school.longitude)
    return total


def estimate_travel_time(distance_km: float) -> float:
    """Minutes needed at the assumed urban average speed."""
    return (distance_km / AVERAGE_SPEED_KMH) * 60


def route_statistics(
    stops: Sequence[OptimizedStop],
    driver: Optional[DriverPosition] = None,
    school: Optional[SchoolLocation] = None,
) -> RouteStatistics:
    completed = sum(1 for s in stops if s.student.status in ("boarded", "dropped"))
    pending = sum(1 for s in stops if s.student.status == "pending")
    absent = sum(1 for s in stops if s.student.status == "absent")
    if driver is not None and school is not None:
        total = total_route_distance_with_driver(stops, driver, school)
    else:
        total = total_route_distance(stops)
    return RouteStatistics(
        total_stops=len(stops),
        completed_stops=completed,
        pending_stops=pending,
        absent_stops=absent,
        total_distance=round(total, 2),
        estimated_time=int(round(estimate_travel_time(total))),
    )


def current_stop(stops: Sequence[OptimizedStop], index: int) -> Optional[OptimizedStop]:
    if 0 <= index < len(stops):
        return stops[index]
    return None


def next_stop(stops: Sequence[OptimizedStop], index: int) -> Optional[OptimizedStop]:
    return current_stop(stops, index + 1) if index >= -1 else None


__all__ = [
    "AVERAGE_SPEED_KMH",
    "DriverPosition",
    "OptimizedStop",
    "RouteStatistics",
    "STUDENT_STATUSES",
    "SchoolLocation",
    "StudentLocation",
    "current_stop",
    "estimate_travel_time",
    "next_stop",
    "optimize_route",
    "route_statistics",
    "total_route_distance",
    "total_route_distance_with_driver",
]
