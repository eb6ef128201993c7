"""Student documents and parent-student links.

Parent links use one flat collection keyed by parent uid:
``{"<parentUid>": {"schoolId": ..., "studentIds": [...]}}``. Recipients for
a student are the parents whose link shares the student's school and lists
the student id.
"""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from geo import has_valid_coordinates


def display_name(student_id: str, doc: Optional[Mapping[str, Any]]) -> str:
    """Best human-readable name for a student document, falling back to its id."""
    if not doc:
        return student_id
    for key in ("name", "fullName", "displayName"):
        value = doc.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    parts = [doc.get("firstName"), doc.get("lastName")]
    joined = " ".join(str(p).strip() for p in parts if isinstance(p, str) and p.strip())
    return joined or student_id


class SchoolDirectory:
    def __init__(self, path: Path):
        self._path = path
        self._lock = asyncio.Lock()
        self._students: Dict[str, Dict[str, Any]] = {}
        self._parent_links: Dict[str, Dict[str, Any]] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        self._students.clear()
        self._parent_links.clear()
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError):
            return
        if not isinstance(raw, dict):
            return
        students = raw.get("students") or {}
        if isinstance(students, dict):
            for student_id, doc in students.items():
                if isinstance(doc, dict):
                    self._students[str(student_id)] = doc
        links = raw.get("parent_students") or {}
        if isinstance(links, dict):
            for parent_id, link in links.items():
                if not isinstance(link, dict):
                    continue
                ids = [str(s) for s in (link.get("studentIds") or []) if s]
                self._parent_links[str(parent_id)] = {
                    "schoolId": link.get("schoolId"),
                    "studentIds": ids,
                }

    async def _persist(self) -> None:
        data = {"students": self._students, "parent_students": self._parent_links}
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
        tmp_path.replace(self._path)

    async def get_student(self, student_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            doc = self._students.get(student_id)
            return dict(doc) if doc is not None else None

    async def upsert_student(self, student_id: str, doc: Mapping[str, Any]) -> Dict[str, Any]:
        if not student_id:
            raise ValueError("student id required")
        async with self._lock:
            merged = {**self._students.get(student_id, {}), **dict(doc)}
            self._students[student_id] = merged
            await self._persist()
            return dict(merged)

    async def students_for(self, school_id: str, route_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Roster rows for a school, optionally narrowed to one route."""
        async with self._lock:
            items = list(self._students.items())
        rows: List[Dict[str, Any]] = []
        for student_id, doc in items:
            if doc.get("schoolId") != school_id:
                continue
            if route_id and doc.get("routeId") != route_id:
                continue
            lat = doc.get("latitude")
            lon = doc.get("longitude")
            valid = has_valid_coordinates(lat, lon)
            rows.append(
                {
                    "studentId": student_id,
                    "studentName": display_name(student_id, doc),
                    "schoolId": school_id,
                    "routeId": doc.get("routeId"),
                    "latitude": float(lat) if valid else None,
                    "longitude": float(lon) if valid else None,
                    "photoUrl": doc.get("photoUrl"),
                }
            )
        rows.sort(key=lambda r: r["studentId"])
        return rows

    async def display_name(self, student_id: str) -> str:
        return display_name(student_id, await self.get_student(student_id))

    async def link_parent(self, parent_id: str, school_id: str, student_ids: List[str]) -> None:
        async with self._lock:
            link = self._parent_links.setdefault(parent_id, {"schoolId": school_id, "studentIds": []})
            link["schoolId"] = school_id
            for student_id in student_ids:
                if student_id and student_id not in link["studentIds"]:
                    link["studentIds"].append(student_id)
            await self._persist()

    async def unlink_parent(self, parent_id: str, student_id: str) -> bool:
        async with self._lock:
            link = self._parent_links.get(parent_id)
            if not link or student_id not in link["studentIds"]:
                return False
            link["studentIds"].remove(student_id)
            await self._persist()
            return True

    async def parent_ids_for(self, student_id: str, school_id: str) -> List[str]:
        async with self._lock:
            return [
                parent_id
                for parent_id, link in self._parent_links.items()
                if link.get("schoolId") == school_id and student_id in link.get("studentIds", [])
            ]


__all__ = ["SchoolDirectory", "display_name"]
