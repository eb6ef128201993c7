"""Holder for the driver's latest GPS fix.

The caller constructs one tracker per driver device and owns its lifetime;
nothing here is a module-level singleton, so tests can drive it with a fake
clock and synthetic fixes.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from geo import has_valid_coordinates
from route_optimizer import DriverPosition

PositionCallback = Callable[[DriverPosition], None]
ErrorCallback = Callable[[int, str], None]

# W3C geolocation error codes
PERMISSION_DENIED = 1
POSITION_UNAVAILABLE = 2
TIMEOUT = 3

_ERROR_MESSAGES = {
    PERMISSION_DENIED: "Location access denied by user",
    POSITION_UNAVAILABLE: "Location information unavailable",
    TIMEOUT: "Location request timeout",
}


def error_message(code: int) -> str:
    return _ERROR_MESSAGES.get(code, "Unknown geolocation error")


class PositionTracker:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._position: Optional[DriverPosition] = None
        self._callbacks: List[PositionCallback] = []
        self._error_callbacks: List[ErrorCallback] = []

    @property
    def last_known(self) -> Optional[DriverPosition]:
        return self._position

    def update(
        self,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[DriverPosition]:
        """Replace the current fix and notify subscribers.

        A fix with unusable coordinates is reported as POSITION_UNAVAILABLE
        and the previous fix is kept.
        """
        if not has_valid_coordinates(latitude, longitude):
            self.report_error(POSITION_UNAVAILABLE)
            return None
        if timestamp is None:
            timestamp = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        position = DriverPosition(
            latitude=float(latitude),
            longitude=float(longitude),
            accuracy=accuracy,
            heading=heading,
            speed=speed,
            timestamp=timestamp,
        )
        self._position = position
        for callback in list(self._callbacks):
            try:
                callback(position)
            except Exception as exc:
                print(f"[position_tracker] callback error: {exc}")
        return position

    def report_error(self, code: int, message: Optional[str] = None) -> None:
        text = message or error_message(code)
        for callback in list(self._error_callbacks):
            try:
                callback(code, text)
            except Exception as exc:
                print(f"[position_tracker] error callback failed: {exc}")

    def subscribe(self, callback: PositionCallback) -> None:
        self._callbacks.append(callback)

    def unsubscribe(self, callback: PositionCallback) -> None:
        self._callbacks = [cb for cb in self._callbacks if cb != callback]

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    def off_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks = [cb for cb in self._error_callbacks if cb != callback]

    def is_stale(self, max_age_s: float) -> bool:
        if self._position is None or self._position.timestamp is None:
            return True
        age = self._clock() - self._position.timestamp.timestamp()
        return age > max_age_s

    def reset(self) -> None:
        self._callbacks = []
        self._error_callbacks = []
        self._position = None


__all__ = [
    "PERMISSION_DENIED",
    "POSITION_UNAVAILABLE",
    "PositionTracker",
    "TIMEOUT",
    "error_message",
]
