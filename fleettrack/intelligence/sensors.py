"""
Sensor bridge
Device readings pushed over HTTP feed these in-process sensors:
position fixes, Wi-Fi / cell estimates and accelerometer vectors.
"""

import logging
import threading
import time
from typing import Callable, List, Optional

from .errors import PermissionDenied, PositionTimeout, PositionUnavailable, Unsupported
from .resolver import NetworkReading, SensorFix

logger = logging.getLogger(__name__)


class _Listeners:
    def __init__(self):
        self._items: List = []
        self._lock = threading.Lock()

    def add(self, item) -> Callable[[], None]:
        with self._lock:
            self._items.append(item)

        def remove():
            with self._lock:
                if item in self._items:
                    self._items.remove(item)

        return remove

    def snapshot(self) -> list:
        with self._lock:
            return list(self._items)

    def __len__(self):
        with self._lock:
            return len(self._items)


class PushPositionSensor:
    def __init__(self):
        self._condition = threading.Condition()
        self._latest: Optional[SensorFix] = None
        self._version = 0
        self._denied = False
        self._listeners = _Listeners()

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    def push(self, fix: SensorFix):
        with self._condition:
            self._latest = fix
            self._version += 1
            self._denied = False
            self._condition.notify_all()

        for on_fix, _ in self._listeners.snapshot():
            try:
                on_fix(fix)
            except Exception:
                logger.exception("Position listener failed")

    def push_error(self, error: Exception):
        if isinstance(error, PermissionDenied):
            with self._condition:
                self._denied = True
                self._condition.notify_all()

        for _, on_error in self._listeners.snapshot():
            if on_error is None:
                continue
            try:
                on_error(error)
            except Exception:
                logger.exception("Position error listener failed")

    def get_position(self, timeout: float) -> SensorFix:
        deadline = time.monotonic() + timeout
        with self._condition:
            version = self._version
            while self._version == version:
                if self._denied:
                    raise PermissionDenied("Location permission denied on device")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PositionTimeout(f"No position fix within {timeout:.0f}s")
                self._condition.wait(remaining)
            if self._latest is None:
                raise PositionUnavailable("No position fix")
            return self._latest

    def subscribe(self, on_fix: Callable, on_error: Optional[Callable] = None) -> Callable[[], None]:
        return self._listeners.add((on_fix, on_error))


class NullPositionSensor:
    """A device without a positioning sensor."""

    def get_position(self, timeout: float) -> SensorFix:
        raise Unsupported("No positioning sensor")

    def subscribe(self, on_fix, on_error=None):
        raise Unsupported("No positioning sensor")


class PushNetworkSource:
    MAX_AGE_SEC = 60

    def __init__(self, max_age: Optional[float] = None, monotonic: Callable[[], float] = time.monotonic):
        self.max_age = max_age if max_age is not None else self.MAX_AGE_SEC
        self._monotonic = monotonic
        self._readings: List[NetworkReading] = []
        self._updated_at: Optional[float] = None
        self._lock = threading.Lock()

    def push(self, readings: List[NetworkReading]):
        with self._lock:
            self._readings = list(readings)
            self._updated_at = self._monotonic()

    def readings(self) -> List[NetworkReading]:
        with self._lock:
            if self._updated_at is None or self._monotonic() - self._updated_at > self.max_age:
                return []
            return list(self._readings)


class PushAccelerometer:
    def __init__(self):
        self._listeners = _Listeners()

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    def push(self, x, y, z):
        for listener in self._listeners.snapshot():
            listener(x, y, z)

    def subscribe(self, listener: Callable) -> Callable[[], None]:
        return self._listeners.add(listener)
