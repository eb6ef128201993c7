"""Reconcile the offline cache with the remote service.

``SyncCoordinator.sync`` performs exactly one pass and reports what happened;
it never retries or schedules itself. ``SyncScheduler`` is the policy layer
that decides when passes run and how long to back off after failures.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from offline_cache import OfflineCache, ScanEvent

UploadFn = Callable[[List[ScanEvent]], Awaitable[Any]]
DownloadFn = Callable[[], Awaitable[Sequence[Mapping[str, Any]]]]


class SyncInProgressError(RuntimeError):
    """Raised when a sync pass is requested while another one is running."""


@dataclass
class SyncResult:
    uploaded: int = 0
    downloaded: int = 0
    upload_error: Optional[BaseException] = None
    download_error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.upload_error is None and self.download_error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uploaded": self.uploaded,
            "downloaded": self.downloaded,
            "upload_error": str(self.upload_error) if self.upload_error else None,
            "download_error": str(self.download_error) if self.download_error else None,
        }


class SyncCoordinator:
    def __init__(
        self,
        cache: OfflineCache,
        school_id: Optional[str] = None,
        route_id: Optional[str] = None,
    ):
        self._cache = cache
        self._school_id = school_id
        self._route_id = route_id
        self._inflight = False

    @property
    def in_flight(self) -> bool:
        return self._inflight

    async def sync(self, upload_fn: UploadFn, download_fn: DownloadFn) -> SyncResult:
        if self._inflight:
            raise SyncInProgressError("sync already in progress")
        self._inflight = True
        try:
            result = SyncResult()
            await self._upload(upload_fn, result)
            await self._download(download_fn, result)
            return result
        finally:
            self._inflight = False

    async def _upload(self, upload_fn: UploadFn, result: SyncResult) -> None:
        pending = await self._cache.get_unsynced_scans()
        if not pending:
            return
        try:
            await upload_fn(list(pending))
        except Exception as exc:
            # the whole batch stays unsynced and is retried on the next pass
            print(f"[sync] upload of {len(pending)} scans failed: {exc}")
            result.upload_error = exc
            return
        try:
            await self._cache.mark_synced([scan.id for scan in pending])
        except Exception as exc:
            # still unsynced locally; the server drops the replayed ids next pass
            print(f"[sync] marking {len(pending)} uploaded scans as synced failed: {exc}")
            result.upload_error = exc
            return
        result.uploaded = len(pending)

    async def _download(self, download_fn: DownloadFn, result: SyncResult) -> None:
        try:
            students = list(await download_fn())
            if students:
                school_id = self._school_id or str(students[0].get("schoolId") or "")
                await self._cache.cache_students(students, school_id, self._route_id)
            else:
                await self._cache.stamp_sync(self._school_id)
            result.downloaded = len(students)
        except Exception as exc:
            print(f"[sync] roster download failed: {exc}")
            result.download_error = exc


class SyncScheduler:
    """Runs sync passes on a timer, on demand, and with exponential backoff."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        upload_fn: UploadFn,
        download_fn: DownloadFn,
        interval_s: float = 60.0,
        base_backoff_s: float = 2.0,
        max_backoff_s: float = 300.0,
    ):
        self._coordinator = coordinator
        self._upload_fn = upload_fn
        self._download_fn = download_fn
        self.interval_s = interval_s
        self.base_backoff_s = base_backoff_s
        self.max_backoff_s = max_backoff_s
        self.failures = 0
        self.last_result: Optional[SyncResult] = None
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def next_delay(self) -> float:
        if self.failures <= 0:
            return self.interval_s
        return min(self.max_backoff_s, self.base_backoff_s * (2 ** (self.failures - 1)))

    def trigger(self) -> None:
        """Ask for a pass now, e.g. when connectivity comes back or the driver taps sync."""
        self._wakeup.set()

    async def run_once(self) -> Optional[SyncResult]:
        try:
            result = await self._coordinator.sync(self._upload_fn, self._download_fn)
        except SyncInProgressError:
            print("[sync_scheduler] pass skipped, another sync is running")
            return None
        self.last_result = result
        if result.ok:
            self.failures = 0
        else:
            self.failures += 1
            print(
                f"[sync_scheduler] pass failed ({self.failures} in a row), "
                f"next attempt in {self.next_delay():.0f}s"
            )
        return result

    async def _loop(self) -> None:
        while True:
            # a trigger arriving mid-pass stays set and starts the next pass at once
            self._wakeup.clear()
            try:
                await self.run_once()
            except Exception as exc:
                self.failures += 1
                print(f"[sync_scheduler] error: {exc}")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
        return self._task

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


__all__ = ["SyncCoordinator", "SyncInProgressError", "SyncResult", "SyncScheduler"]
