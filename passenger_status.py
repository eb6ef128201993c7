"""Per-trip passenger status records with on-write listeners.

Every committed create, update or delete is handed to the registered
listeners as a ``StatusChange`` carrying the before and after snapshots.
Listeners run after the write is durable; a failing listener is logged and
never undoes the write.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

PASSENGER_STATUSES = ("pending", "boarded", "dropped", "absent")
ACTION_TO_STATUS = {"boarding": "boarded", "dropping": "dropped"}
# scan ids remembered per record; older replays fall to the updatedAt check
RECENT_SCAN_IDS = 20


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso_from_ms(value: int) -> str:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc).isoformat()


def _parse_iso_datetime(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class PassengerStatus:
    trip_id: str
    student_id: str
    status: str
    school_id: Optional[str] = None
    student_name: Optional[str] = None
    updated_at: str = ""
    last_scan_id: Optional[str] = None
    recent_scan_ids: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tripId": self.trip_id,
            "studentId": self.student_id,
            "status": self.status,
            "schoolId": self.school_id,
            "studentName": self.student_name,
            "updatedAt": self.updated_at,
            "lastScanId": self.last_scan_id,
            "recentScanIds": list(self.recent_scan_ids),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["PassengerStatus"]:
        trip_id = data.get("tripId")
        student_id = data.get("studentId")
        status = data.get("status")
        if not trip_id or not student_id or status not in PASSENGER_STATUSES:
            return None
        return cls(
            trip_id=str(trip_id),
            student_id=str(student_id),
            status=status,
            school_id=data.get("schoolId"),
            student_name=data.get("studentName"),
            updated_at=data.get("updatedAt") or _now_iso(),
            last_scan_id=data.get("lastScanId"),
            recent_scan_ids=tuple(str(s) for s in (data.get("recentScanIds") or []) if s),
        )


@dataclass(frozen=True)
class StatusChange:
    trip_id: str
    student_id: str
    before: Optional[PassengerStatus]
    after: Optional[PassengerStatus]

    @property
    def deleted(self) -> bool:
        return self.after is None


@dataclass
class ScanApplyResult:
    applied: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"applied": self.applied, "skipped": self.skipped}


WriteListener = Callable[[StatusChange], Awaitable[Any]]
_Key = Tuple[str, str]


class PassengerStatusStore:
    def __init__(self, path: Path):
        self._path = path
        self._lock = asyncio.Lock()
        self._records: Dict[_Key, PassengerStatus] = {}
        self._listeners: List[WriteListener] = []
        self._load_sync()

    def _load_sync(self) -> None:
        self._records.clear()
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError):
            return
        if not isinstance(raw, dict):
            return
        for entry in raw.get("passengers", []) or []:
            if not isinstance(entry, dict):
                continue
            record = PassengerStatus.from_dict(entry)
            if record is not None:
                self._records[(record.trip_id, record.student_id)] = record

    async def _persist(self) -> None:
        data = {
            "passengers": [record.to_dict() for record in self._records.values()],
        }
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
        tmp_path.replace(self._path)

    def on_write(self, listener: WriteListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: WriteListener) -> None:
        self._listeners = [item for item in self._listeners if item != listener]

    async def _dispatch(self, changes: Iterable[StatusChange]) -> None:
        for change in changes:
            for listener in list(self._listeners):
                try:
                    await listener(change)
                except Exception as exc:
                    print(
                        f"[passenger_status] listener failed for "
                        f"{change.trip_id}/{change.student_id}: {exc}"
                    )

    async def get(self, trip_id: str, student_id: str) -> Optional[PassengerStatus]:
        async with self._lock:
            return self._records.get((trip_id, student_id))

    async def list_trip(self, trip_id: str) -> List[PassengerStatus]:
        async with self._lock:
            items = [record for (tid, _), record in self._records.items() if tid == trip_id]
        items.sort(key=lambda r: r.student_id)
        return items

    async def set_status(
        self,
        trip_id: str,
        student_id: str,
        status: str,
        school_id: Optional[str] = None,
        student_name: Optional[str] = None,
    ) -> StatusChange:
        if status not in PASSENGER_STATUSES:
            raise ValueError(f"invalid status {status!r}")
        async with self._lock:
            key = (trip_id, student_id)
            before = self._records.get(key)
            if before is None:
                after = PassengerStatus(
                    trip_id=trip_id,
                    student_id=student_id,
                    status=status,
                    school_id=school_id,
                    student_name=student_name,
                    updated_at=_now_iso(),
                )
            else:
                after = replace(
                    before,
                    status=status,
                    school_id=school_id or before.school_id,
                    student_name=student_name or before.student_name,
                    updated_at=_now_iso(),
                )
            self._records[key] = after
            try:
                await self._persist()
            except Exception:
                self._restore(key, before)
                raise
            change = StatusChange(trip_id, student_id, before, after)
        await self._dispatch([change])
        return change

    async def delete(self, trip_id: str, student_id: str) -> Optional[StatusChange]:
        async with self._lock:
            key = (trip_id, student_id)
            before = self._records.pop(key, None)
            if before is None:
                return None
            try:
                await self._persist()
            except Exception:
                self._records[key] = before
                raise
            change = StatusChange(trip_id, student_id, before, None)
        await self._dispatch([change])
        return change

    def _restore(self, key: _Key, previous: Optional[PassengerStatus]) -> None:
        if previous is None:
            self._records.pop(key, None)
        else:
            self._records[key] = previous

    async def seed_trip(
        self,
        trip_id: str,
        school_id: str,
        students: Sequence[Mapping[str, Any]],
    ) -> int:
        """Create ``pending`` rows for students without one. Safe to repeat."""
        changes: List[StatusChange] = []
        async with self._lock:
            now = _now_iso()
            for student in students:
                student_id = student.get("studentId") or student.get("id")
                if not student_id:
                    continue
                key = (trip_id, str(student_id))
                if key in self._records:
                    continue
                record = PassengerStatus(
                    trip_id=trip_id,
                    student_id=str(student_id),
                    status="pending",
                    school_id=school_id,
                    student_name=student.get("studentName") or student.get("name") or "Unknown",
                    updated_at=now,
                )
                self._records[key] = record
                changes.append(StatusChange(trip_id, record.student_id, None, record))
            if changes:
                try:
                    await self._persist()
                except Exception:
                    for change in changes:
                        self._records.pop((change.trip_id, change.student_id), None)
                    raise
        await self._dispatch(changes)
        return len(changes)

    async def apply_scans(
        self,
        scans: Sequence[Mapping[str, Any]],
        default_school_id: Optional[str] = None,
    ) -> ScanApplyResult:
        """Turn an uploaded scan batch into status writes, committed together.

        Replayed scan ids, scans without a trip, and scans older than the
        record's last update are skipped, so re-uploading a batch is harmless.
        """
        result = ScanApplyResult()
        changes: List[StatusChange] = []
        ordered = sorted(
            (scan for scan in scans if isinstance(scan, Mapping)),
            key=lambda s: _scan_timestamp(s),
        )
        result.skipped = len(scans) - len(ordered)
        async with self._lock:
            records = dict(self._records)
            for scan in ordered:
                scan_id = scan.get("id")
                trip_id = scan.get("tripId")
                student_id = scan.get("studentId")
                status = ACTION_TO_STATUS.get(scan.get("action"))
                if not scan_id or not trip_id or not student_id or status is None:
                    result.skipped += 1
                    continue
                key = (str(trip_id), str(student_id))
                before = records.get(key)
                if before is not None and str(scan_id) in before.recent_scan_ids:
                    result.skipped += 1
                    continue
                scanned_at = _iso_from_ms(_scan_timestamp(scan))
                if before is not None:
                    previous = _parse_iso_datetime(before.updated_at)
                    current = _parse_iso_datetime(scanned_at)
                    if previous and current and current < previous:
                        result.skipped += 1
                        continue
                after = PassengerStatus(
                    trip_id=key[0],
                    student_id=key[1],
                    status=status,
                    school_id=(before.school_id if before else None) or default_school_id,
                    student_name=scan.get("studentName") or (before.student_name if before else None),
                    updated_at=scanned_at,
                    last_scan_id=str(scan_id),
                    recent_scan_ids=_remember(before, str(scan_id)),
                )
                records[key] = after
                changes.append(StatusChange(key[0], key[1], before, after))
                result.applied += 1
            if changes:
                previous_records = self._records
                self._records = records
                try:
                    await self._persist()
                except Exception:
                    self._records = previous_records
                    raise
        if result.applied or result.skipped:
            print(f"[passenger_status] scan batch applied={result.applied} skipped={result.skipped}")
        await self._dispatch(changes)
        return result


def _remember(record: Optional[PassengerStatus], scan_id: str) -> Tuple[str, ...]:
    previous = record.recent_scan_ids if record is not None else ()
    return (previous + (scan_id,))[-RECENT_SCAN_IDS:]


def _scan_timestamp(scan: Mapping[str, Any]) -> int:
    try:
        return int(scan.get("timestamp") or 0)
    except (TypeError, ValueError):
        return 0


__all__ = [
    "ACTION_TO_STATUS",
    "PASSENGER_STATUSES",
    "RECENT_SCAN_IDS",
    "PassengerStatus",
    "PassengerStatusStore",
    "ScanApplyResult",
    "StatusChange",
]
