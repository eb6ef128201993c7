"""Per-parent notification inbox.

Writes for one status transition go through an ``InboxBatch`` so readers
see either every recipient's record or none of them.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class NotificationRecord:
    title: str
    body: str
    data: Dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=_now_iso)
    read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "createdAt": self.created_at,
            "read": self.read,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["NotificationRecord"]:
        if not raw.get("id") or not raw.get("title"):
            return None
        data = raw.get("data")
        return cls(
            id=str(raw["id"]),
            title=str(raw["title"]),
            body=str(raw.get("body") or ""),
            data=data if isinstance(data, dict) else {},
            created_at=raw.get("createdAt") or _now_iso(),
            read=bool(raw.get("read", False)),
        )


class InboxBatch:
    """Collects inbox writes and applies them with one commit."""

    def __init__(self, store: "InboxStore"):
        self._store = store
        self._writes: List[Tuple[str, NotificationRecord]] = []
        self._committed = False

    def add(self, parent_id: str, record: NotificationRecord) -> str:
        if self._committed:
            raise RuntimeError("batch already committed")
        self._writes.append((parent_id, record))
        return record.id

    def __len__(self) -> int:
        return len(self._writes)

    async def commit(self) -> List[str]:
        if self._committed:
            raise RuntimeError("batch already committed")
        self._committed = True
        return await self._store._apply(self._writes)


class InboxStore:
    def __init__(self, path: Path):
        self._path = path
        self._lock = asyncio.Lock()
        self._inboxes: Dict[str, List[NotificationRecord]] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        self._inboxes.clear()
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError):
            return
        inboxes = raw.get("inboxes", {}) if isinstance(raw, dict) else {}
        if not isinstance(inboxes, dict):
            return
        for parent_id, entries in inboxes.items():
            records = []
            for entry in entries or []:
                if not isinstance(entry, dict):
                    continue
                record = NotificationRecord.from_dict(entry)
                if record is not None:
                    records.append(record)
            self._inboxes[str(parent_id)] = records

    async def _persist(self) -> None:
        data = {
            "inboxes": {
                parent_id: [record.to_dict() for record in records]
                for parent_id, records in self._inboxes.items()
            },
            "updated_at": _now_iso(),
        }
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
        tmp_path.replace(self._path)

    def batch(self) -> InboxBatch:
        return InboxBatch(self)

    async def _apply(self, writes: List[Tuple[str, NotificationRecord]]) -> List[str]:
        if not writes:
            return []
        async with self._lock:
            snapshot = {parent_id: list(records) for parent_id, records in self._inboxes.items()}
            for parent_id, record in writes:
                self._inboxes.setdefault(parent_id, []).append(record)
            try:
                await self._persist()
            except Exception:
                self._inboxes = snapshot
                raise
        return [record.id for _, record in writes]

    async def add(self, parent_id: str, record: NotificationRecord) -> str:
        batch = self.batch()
        batch.add(parent_id, record)
        ids = await batch.commit()
        return ids[0]

    async def list_inbox(self, parent_id: str, unread_only: bool = False) -> List[Dict[str, Any]]:
        async with self._lock:
            records = list(self._inboxes.get(parent_id, []))
        if unread_only:
            records = [r for r in records if not r.read]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [record.to_dict() for record in records]

    async def mark_read(self, parent_id: str, note_id: str) -> bool:
        async with self._lock:
            for record in self._inboxes.get(parent_id, []):
                if record.id == note_id:
                    if not record.read:
                        record.read = True
                        await self._persist()
                    return True
            return False

    async def count(self, parent_id: Optional[str] = None) -> int:
        async with self._lock:
            if parent_id is not None:
                return len(self._inboxes.get(parent_id, []))
            return sum(len(records) for records in self._inboxes.values())


__all__ = ["InboxBatch", "InboxStore", "NotificationRecord"]
