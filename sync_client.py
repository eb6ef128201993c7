"""Async HTTP client for the Routemaster service (scan upload, roster download)."""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Sequence

import httpx

from offline_cache import ScanEvent


class RoutemasterClient:
    """Implements the sync upload/download contracts over the service's REST API."""

    def __init__(
        self,
        base_url: str,
        school_id: str,
        route_id: Optional[str] = None,
        trip_id: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._school_id = school_id
        self._route_id = route_id
        self._trip_id = trip_id
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> "RoutemasterClient":
        """Build a client from environment configuration.

        * ``ROUTEMASTER_API_BASE`` - Example: ``https://routemaster.example.org``
        * ``ROUTEMASTER_SCHOOL_ID`` - school whose roster this device caches.
        * ``ROUTEMASTER_ROUTE_ID`` / ``ROUTEMASTER_TRIP_ID`` - optional scoping.
        * ``ROUTEMASTER_HTTP_TIMEOUT_S`` - request timeout, default 10.
        """

        base_url = (os.getenv("ROUTEMASTER_API_BASE") or "").strip()
        school_id = (os.getenv("ROUTEMASTER_SCHOOL_ID") or "").strip()

        missing: List[str] = []
        if not base_url:
            missing.append("ROUTEMASTER_API_BASE")
        if not school_id:
            missing.append("ROUTEMASTER_SCHOOL_ID")
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

        return cls(
            base_url=base_url,
            school_id=school_id,
            route_id=(os.getenv("ROUTEMASTER_ROUTE_ID") or "").strip() or None,
            trip_id=(os.getenv("ROUTEMASTER_TRIP_ID") or "").strip() or None,
            timeout=float(os.getenv("ROUTEMASTER_HTTP_TIMEOUT_S", "10")),
        )

    @property
    def school_id(self) -> str:
        return self._school_id

    @property
    def route_id(self) -> Optional[str]:
        return self._route_id

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def upload_scans(self, scans: Sequence[ScanEvent]) -> Dict[str, Any]:
        """Post the whole batch in one request; any non-2xx raises."""
        client = await self._ensure_client()
        payload = {
            "schoolId": self._school_id,
            "scans": [scan.to_dict() for scan in scans],
        }
        response = await client.post("/v1/scans", json=payload)
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, dict) else {}

    async def download_roster(self) -> List[Dict[str, Any]]:
        client = await self._ensure_client()
        params: Dict[str, str] = {}
        if self._route_id:
            params["routeId"] = self._route_id
        if self._trip_id:
            params["tripId"] = self._trip_id
        response = await client.get(f"/v1/schools/{self._school_id}/roster", params=params)
        response.raise_for_status()
        data = response.json()
        students = data.get("students") if isinstance(data, dict) else data
        if isinstance(students, list):
            return [row for row in students if isinstance(row, dict)]
        return []


__all__ = ["RoutemasterClient"]
