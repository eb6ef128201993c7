"""Offline cache for the driver device: roster rows, scan history and sync metadata.

Everything lives in one JSON file, rewritten through a temporary file and an
atomic rename. Each public operation is one unit of work: the new state is
built on copies, persisted, and only then swapped in, so a failed write
leaves the previous state in memory and on disk.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

SCHEMA_VERSION = 1
SCAN_ACTIONS = ("boarding", "dropping")


@dataclass(frozen=True)
class ScanEvent:
    id: str
    student_id: str
    student_name: str
    action: str
    timestamp: int
    trip_id: Optional[str] = None
    synced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "studentId": self.student_id,
            "studentName": self.student_name,
            "action": self.action,
            "timestamp": self.timestamp,
            "tripId": self.trip_id,
            "synced": self.synced,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["ScanEvent"]:
        scan_id = data.get("id")
        student_id = data.get("studentId")
        action = data.get("action")
        if not scan_id or not student_id or action not in SCAN_ACTIONS:
            return None
        try:
            timestamp = int(data.get("timestamp") or 0)
        except (TypeError, ValueError):
            return None
        return cls(
            id=str(scan_id),
            student_id=str(student_id),
            student_name=str(data.get("studentName") or student_id),
            action=action,
            timestamp=timestamp,
            trip_id=data.get("tripId"),
            synced=bool(data.get("synced", False)),
        )


@dataclass(frozen=True)
class CacheMetadata:
    last_sync: int
    version: int
    school_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"lastSync": self.last_sync, "version": self.version, "schoolId": self.school_id}


@dataclass
class CacheStats:
    student_count: int
    unsynced_scans: int
    last_sync: Optional[int]
    cache_size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _student_key(row: Mapping[str, Any]) -> Optional[str]:
    value = row.get("studentId") or row.get("id")
    if value is None or value == "":
        return None
    return str(value)


def _group(ids_and_keys: Iterable[tuple]) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = {}
    for item_id, key in ids_and_keys:
        if key is None:
            continue
        grouped.setdefault(str(key), []).append(item_id)
    return grouped


class OfflineCache:
    def __init__(self, path: Path, clock: Callable[[], float] = time.time):
        self._path = path
        self._clock = clock
        self._lock = asyncio.Lock()
        self._students: Dict[str, Dict[str, Any]] = {}
        self._scans: Dict[str, ScanEvent] = {}
        self._metadata: Optional[CacheMetadata] = None
        self._students_by_school: Dict[str, List[str]] = {}
        self._students_by_route: Dict[str, List[str]] = {}
        self._scans_by_student: Dict[str, List[str]] = {}
        self._scans_by_trip: Dict[str, List[str]] = {}
        self._unsynced: List[str] = []
        self._load_sync()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _load_sync(self) -> None:
        self._students = {}
        self._scans = {}
        self._metadata = None
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._reindex()
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[offline_cache] unreadable cache at {self._path}: {exc}")
            self._reindex()
            return
        if not isinstance(raw, dict):
            self._reindex()
            return

        version = raw.get("version")
        for entry in raw.get("scanHistory", []) or []:
            if not isinstance(entry, dict):
                continue
            scan = ScanEvent.from_dict(entry)
            if scan is not None:
                self._scans[scan.id] = scan

        if version != SCHEMA_VERSION:
            # roster and metadata are re-downloadable; scans are not
            print(f"[offline_cache] schema version {version!r} != {SCHEMA_VERSION}, dropping roster")
            self._reindex()
            return

        for entry in raw.get("students", []) or []:
            if not isinstance(entry, dict):
                continue
            key = _student_key(entry)
            if key is None:
                continue
            self._students[key] = dict(entry, studentId=key)
        meta = raw.get("metadata")
        if isinstance(meta, dict) and meta.get("lastSync") is not None:
            try:
                self._metadata = CacheMetadata(
                    last_sync=int(meta["lastSync"]),
                    version=int(meta.get("version", SCHEMA_VERSION)),
                    school_id=str(meta.get("schoolId") or ""),
                )
            except (TypeError, ValueError):
                self._metadata = None
        self._reindex()

    def _reindex(self) -> None:
        self._students_by_school = _group(
            (sid, row.get("schoolId")) for sid, row in self._students.items()
        )
        self._students_by_route = _group(
            (sid, row.get("routeId")) for sid, row in self._students.items()
        )
        self._scans_by_student = _group((scan.id, scan.student_id) for scan in self._scans.values())
        self._scans_by_trip = _group((scan.id, scan.trip_id) for scan in self._scans.values())
        self._unsynced = [scan.id for scan in self._scans.values() if not scan.synced]

    def _serialise_state(
        self,
        students: Mapping[str, Dict[str, Any]],
        scans: Mapping[str, ScanEvent],
        metadata: Optional[CacheMetadata],
    ) -> str:
        data = {
            "version": SCHEMA_VERSION,
            "students": list(students.values()),
            "scanHistory": [scan.to_dict() for scan in scans.values()],
            "metadata": metadata.to_dict() if metadata else None,
        }
        return json.dumps(data, indent=2, sort_keys=True)

    async def _commit(
        self,
        students: Dict[str, Dict[str, Any]],
        scans: Dict[str, ScanEvent],
        metadata: Optional[CacheMetadata],
    ) -> None:
        payload = self._serialise_state(students, scans, metadata)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(payload)
        tmp_path.replace(self._path)
        self._students = students
        self._scans = scans
        self._metadata = metadata
        self._reindex()

    async def cache_students(
        self,
        students: Sequence[Mapping[str, Any]],
        school_id: str,
        route_id: Optional[str] = None,
    ) -> int:
        """Upsert roster rows and stamp the sync metadata in one write."""
        async with self._lock:
            now = self._now_ms()
            updated = dict(self._students)
            awaiting_upload = {self._scans[scan_id].student_id for scan_id in self._unsynced}
            cached = 0
            for student in students:
                key = _student_key(student)
                if key is None:
                    print(f"[offline_cache] skipping roster row without studentId: {student!r}")
                    continue
                row = dict(student)
                row["studentId"] = key
                row.setdefault("schoolId", school_id)
                if route_id is not None:
                    row["routeId"] = route_id
                elif "routeId" not in row and key in updated:
                    row["routeId"] = updated[key].get("routeId")
                if key in awaiting_upload and key in updated and "status" in updated[key]:
                    # the server has not seen this device's scans yet
                    row["status"] = updated[key]["status"]
                row["lastUpdated"] = now
                updated[key] = row
                cached += 1
            metadata = CacheMetadata(last_sync=now, version=SCHEMA_VERSION, school_id=school_id)
            await self._commit(updated, self._scans, metadata)
            return cached

    async def stamp_sync(self, school_id: Optional[str] = None) -> CacheMetadata:
        """Record a successful sync pass without touching the roster."""
        async with self._lock:
            if school_id is None:
                school_id = self._metadata.school_id if self._metadata else ""
            metadata = CacheMetadata(last_sync=self._now_ms(), version=SCHEMA_VERSION, school_id=school_id)
            await self._commit(self._students, self._scans, metadata)
            return metadata

    async def get_cached_students(
        self,
        school_id: Optional[str] = None,
        route_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            if route_id:
                ids = self._students_by_route.get(route_id, [])
            elif school_id:
                ids = self._students_by_school.get(school_id, [])
            else:
                ids = list(self._students.keys())
            return [dict(self._students[sid]) for sid in ids]

    async def get_student(self, student_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            row = self._students.get(student_id)
            return dict(row) if row else None

    async def update_student_status(self, student_id: str, status: str) -> bool:
        """Reflect a local scan on the cached roster row; False if the student is unknown."""
        async with self._lock:
            row = self._students.get(student_id)
            if row is None:
                return False
            updated = dict(self._students)
            updated[student_id] = dict(row, status=status)
            await self._commit(updated, self._scans, self._metadata)
            return True

    async def record_scan(
        self,
        student_id: str,
        student_name: str,
        action: str,
        trip_id: Optional[str] = None,
    ) -> str:
        if action not in SCAN_ACTIONS:
            raise ValueError(f"invalid scan action {action!r}")
        if not student_id:
            raise ValueError("student_id required")
        async with self._lock:
            timestamp = self._now_ms()
            scan_id = f"{student_id}-{timestamp}"
            while scan_id in self._scans:
                timestamp += 1
                scan_id = f"{student_id}-{timestamp}"
            scan = ScanEvent(
                id=scan_id,
                student_id=student_id,
                student_name=student_name,
                action=action,
                timestamp=timestamp,
                trip_id=trip_id,
                synced=False,
            )
            scans = dict(self._scans)
            scans[scan_id] = scan
            await self._commit(self._students, scans, self._metadata)
            return scan_id

    async def get_unsynced_scans(self) -> List[ScanEvent]:
        async with self._lock:
            return [self._scans[scan_id] for scan_id in self._unsynced]

    async def mark_synced(self, scan_ids: Iterable[str]) -> int:
        """Flip ``synced`` on the given ids. Unknown ids are ignored."""
        async with self._lock:
            scans = dict(self._scans)
            changed = 0
            for scan_id in scan_ids:
                scan = scans.get(scan_id)
                if scan is None or scan.synced:
                    continue
                scans[scan_id] = replace(scan, synced=True)
                changed += 1
            if changed:
                await self._commit(self._students, scans, self._metadata)
            return changed

    async def get_student_scan_history(self, student_id: str) -> List[ScanEvent]:
        async with self._lock:
            return [self._scans[scan_id] for scan_id in self._scans_by_student.get(student_id, [])]

    async def get_trip_scans(self, trip_id: str) -> List[ScanEvent]:
        async with self._lock:
            return [self._scans[scan_id] for scan_id in self._scans_by_trip.get(trip_id, [])]

    async def get_metadata(self) -> Optional[CacheMetadata]:
        async with self._lock:
            return self._metadata

    async def clear(self) -> None:
        async with self._lock:
            await self._commit({}, {}, None)

    async def stats(self) -> CacheStats:
        async with self._lock:
            cache_size = len(json.dumps(list(self._students.values()))) + len(
                json.dumps([scan.to_dict() for scan in self._scans.values()])
            )
            return CacheStats(
                student_count=len(self._students),
                unsynced_scans=len(self._unsynced),
                last_sync=self._metadata.last_sync if self._metadata else None,
                cache_size=cache_size,
            )

    async def is_offline_mode_available(self) -> bool:
        stats = await self.stats()
        return stats.student_count > 0


__all__ = ["CacheMetadata", "CacheStats", "OfflineCache", "SCAN_ACTIONS", "SCHEMA_VERSION", "ScanEvent"]
