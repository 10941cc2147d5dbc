"""
Location Source Resolver v2.0
Best-effort position with an ordered fallback chain:
- Device positioning sensor, guarded by a safety timeout
- Combined network signal (Wi-Fi / cell readings, confidence-weighted fusion)
- IP geolocation providers, tried in order
- Last known good fix (younger than 5 minutes)
- Optional fixed default location
Every sample carries an accuracy radius and a confidence score in [0, 1].
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from .errors import PermissionDenied, PositionTimeout, PositionUnavailable, Unsupported
from .geometry import check_coordinate

logger = logging.getLogger(__name__)

IP_MIN_ACCURACY_M = 3000
DEFAULT_ACCURACY_M = 100000
WIFI_MAX_ACCURACY_M = 100
CELL_MAX_ACCURACY_M = 3000


class LocationSource(Enum):
    GPS = 'gps'
    NETWORK = 'network'
    IP = 'ip'
    CACHE = 'cache'
    DEFAULT = 'default'


class SensorStatus(Enum):
    AVAILABLE = 'available'
    UNAVAILABLE = 'unavailable'
    PERMISSION_DENIED = 'permission_denied'
    TIMEOUT = 'timeout'


class ResolveMode(Enum):
    SINGLE_SHOT = 'single-shot'
    WATCH = 'watch'


@dataclass(frozen=True)
class LocationSample:
    latitude: float
    longitude: float
    accuracy_m: float
    source: LocationSource
    confidence: float
    captured_at: datetime
    provider: Optional[str] = None

    def __post_init__(self):
        check_coordinate(self.latitude, self.longitude)
        if not self.accuracy_m > 0:
            raise ValueError(f"accuracy must be positive, got {self.accuracy_m}")
        if self.source is LocationSource.IP and self.accuracy_m < IP_MIN_ACCURACY_M:
            raise ValueError(f"IP-based accuracy must be at least {IP_MIN_ACCURACY_M}m")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    @property
    def is_fallback(self) -> bool:
        return self.source is not LocationSource.GPS

    def to_dict(self) -> dict:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'accuracy': round(self.accuracy_m, 1),
            'source': self.source.value,
            'confidence': round(self.confidence, 3),
            'captured_at': self.captured_at.isoformat(),
            'provider': self.provider,
            'is_fallback': self.is_fallback,
            'accuracy_label': describe_accuracy(self),
        }


@dataclass
class SensorFix:
    latitude: float
    longitude: float
    accuracy_m: float
    captured_at: Optional[datetime] = None

    def __post_init__(self):
        check_coordinate(self.latitude, self.longitude)
        if not self.accuracy_m > 0:
            raise ValueError(f"accuracy must be positive, got {self.accuracy_m}")


@dataclass
class NetworkReading:
    latitude: float
    longitude: float
    accuracy_m: float

    def __post_init__(self):
        check_coordinate(self.latitude, self.longitude)
        if not self.accuracy_m > 0:
            raise ValueError(f"accuracy must be positive, got {self.accuracy_m}")

    @property
    def technology(self) -> Optional[str]:
        if self.accuracy_m < WIFI_MAX_ACCURACY_M:
            return 'wifi'
        if self.accuracy_m < CELL_MAX_ACCURACY_M:
            return 'cell'
        return None


def _band(value, limits, factors):
    for limit, factor in zip(limits, factors):
        if value < limit:
            return factor
    return factors[-1]


def gps_confidence(accuracy_m: float) -> float:
    return _band(accuracy_m, (20, 50, 100), (0.95, 0.85, 0.7, 0.5))


def confidence_score(kind: str, accuracy_m: float, age_sec: float = 0) -> float:
    """Heuristic confidence for wifi / cell / ip / cache / default readings."""
    base = {'wifi': 0.8, 'cell': 0.6, 'ip': 0.4, 'cache': 0.5, 'default': 0.1}.get(kind, 0.3)

    accuracy_factor = 1.0
    if kind == 'wifi':
        accuracy_factor = _band(accuracy_m, (20, 50, 100), (1.2, 1.0, 0.8, 0.6))
    elif kind == 'cell':
        accuracy_factor = _band(accuracy_m, (200, 500, 1000), (1.2, 1.0, 0.8, 0.6))
    elif kind == 'ip':
        accuracy_factor = _band(accuracy_m, (1000, 5000, 10000), (1.2, 1.0, 0.8, 0.6))

    age_factor = 1.0
    if kind == 'cache':
        age_factor = _band(age_sec / 60, (5, 10, 20), (1.0, 0.9, 0.7, 0.5))

    return max(0.0, min(1.0, base * accuracy_factor * age_factor))


def fuse_network_readings(readings: List[NetworkReading], now: datetime) -> Optional[LocationSample]:
    scored = []
    for reading in readings:
        kind = reading.technology
        if kind is None:
            continue
        scored.append((reading, kind, confidence_score(kind, reading.accuracy_m)))

    if not scored:
        return None

    if len(scored) == 1:
        reading, kind, confidence = scored[0]
        return LocationSample(reading.latitude, reading.longitude, reading.accuracy_m,
                              LocationSource.NETWORK, confidence, now, provider=kind)

    total = sum(c for _, _, c in scored)
    lat = sum(r.latitude * c for r, _, c in scored) / total
    lon = sum(r.longitude * c for r, _, c in scored) / total
    best = min(r.accuracy_m for r, _, _ in scored)
    combined = min(1.0, sum(c * 0.7 for _, _, c in scored))

    return LocationSample(lat, lon, best / combined, LocationSource.NETWORK, combined, now,
                          provider='fusion')


def describe_accuracy(sample: LocationSample) -> str:
    source = sample.source
    if source is LocationSource.GPS:
        return f"GPS (±{sample.accuracy_m:.0f}m)"
    if source is LocationSource.NETWORK:
        label = 'Wi-Fi' if sample.provider == 'wifi' else 'Cell tower' if sample.provider == 'cell' else 'Network'
        return f"{label} (±{sample.accuracy_m:.0f}m)"
    if source is LocationSource.IP:
        return f"IP-based (±{sample.accuracy_m / 1000:.0f}km)"
    if source is LocationSource.CACHE:
        return f"Last known position (±{sample.accuracy_m:.0f}m)"
    if source is LocationSource.DEFAULT:
        return "Default location (approximate)"
    raise ValueError(f"Unhandled location source: {source}")


class LocationResolver:
    MAX_CONSECUTIVE_ERRORS = 3

    def __init__(self, sensor, config, cache, network=None, ip_locator=None, connectivity=None,
                 clock: Callable[[], datetime] = datetime.now):
        self.sensor = sensor
        self.network = network
        self.ip_locator = ip_locator
        self.connectivity = connectivity
        self.config = config
        self.cache = cache
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='position-sensor')
        self._permission_denied = False
        self.consecutive_errors = 0
        self.sensor_status: Optional[SensorStatus] = None
        self.last_sample: Optional[LocationSample] = None
        self.last_error: Optional[str] = None

    @property
    def permission_denied(self) -> bool:
        return self._permission_denied

    def deny_permission(self):
        self._permission_denied = True
        self._report(SensorStatus.PERMISSION_DENIED)

    def grant_permission(self):
        self._permission_denied = False
        self.consecutive_errors = 0

    def resolve(self, mode: ResolveMode = ResolveMode.SINGLE_SHOT, timeout: Optional[float] = None, **watch_options):
        if mode is ResolveMode.WATCH:
            return self.watch(**watch_options)
        if mode is ResolveMode.SINGLE_SHOT:
            return self.get_current(timeout)
        raise ValueError(f"Unhandled resolve mode: {mode}")

    def get_current(self, timeout: Optional[float] = None) -> LocationSample:
        if self._permission_denied:
            raise PermissionDenied("Location permission has been denied")

        timeout = self.config.sensor_timeout_sec if timeout is None else timeout

        try:
            fix = self._read_sensor(timeout)
        except PermissionDenied:
            self.deny_permission()
            raise
        except Unsupported:
            logger.debug("No positioning sensor, using fallback chain")
            self._report(SensorStatus.UNAVAILABLE)
        except (PositionTimeout, PositionUnavailable) as e:
            self._sensor_failed(e)
        else:
            return self.accept_fix(fix)

        return self.resolve_fallback()

    def accept_fix(self, fix: SensorFix) -> LocationSample:
        sample = LocationSample(
            latitude=fix.latitude,
            longitude=fix.longitude,
            accuracy_m=fix.accuracy_m,
            source=LocationSource.GPS,
            confidence=gps_confidence(fix.accuracy_m),
            captured_at=fix.captured_at or self._clock(),
        )
        self.consecutive_errors = 0
        self._report(SensorStatus.AVAILABLE)
        self.cache.set(sample)
        self.last_sample = sample
        return sample

    def resolve_fallback(self) -> LocationSample:
        for step in (self._from_network, self._from_ip, self._from_cache, self._from_default):
            sample = step()
            if sample is not None:
                logger.info("Position resolved from %s (±%.0fm)", sample.source.value, sample.accuracy_m)
                self.last_sample = sample
                return sample

        self.last_error = "All location sources failed"
        raise PositionUnavailable(self.last_error)

    def watch(self, on_sample: Optional[Callable] = None, on_error: Optional[Callable] = None,
              background: Optional[bool] = None, interval: Optional[float] = None) -> 'LocationWatch':
        background = self.config.background_tracking if background is None else background
        interval = self.config.tracking_interval_sec if interval is None else interval
        location_watch = LocationWatch(self, on_sample=on_sample, on_error=on_error,
                                       background=background, interval=interval)
        location_watch.start()
        return location_watch

    def shutdown(self):
        self._executor.shutdown(wait=False)

    def _read_sensor(self, timeout: float) -> SensorFix:
        future = self._executor.submit(self.sensor.get_position, timeout)
        try:
            return future.result(timeout=timeout + self.config.sensor_safety_margin_sec)
        except FutureTimeout:
            raise PositionTimeout(f"Position sensor did not answer within {timeout:.0f}s")

    def _sensor_failed(self, error: Exception):
        self.consecutive_errors += 1
        self.last_error = str(error)
        logger.warning("Position sensor failed (%d in a row): %s", self.consecutive_errors, error)

        if self.consecutive_errors >= self.MAX_CONSECUTIVE_ERRORS:
            self._report(SensorStatus.UNAVAILABLE)
        elif isinstance(error, PositionTimeout):
            self._report(SensorStatus.TIMEOUT)
        else:
            self._report(SensorStatus.UNAVAILABLE)

    def _report(self, status: SensorStatus):
        self.sensor_status = status
        if self.connectivity is not None:
            self.connectivity.report_sensor_status(status)

    def _from_network(self) -> Optional[LocationSample]:
        if self.network is None:
            return None
        try:
            readings = self.network.readings()
        except Unsupported:
            return None
        except Exception as e:
            logger.warning("Network signal lookup failed: %s", e)
            return None
        return fuse_network_readings(readings, self._clock())

    def _from_ip(self) -> Optional[LocationSample]:
        if self.ip_locator is None:
            return None
        fix = self.ip_locator.locate()
        if not fix:
            return None
        accuracy = max(float(fix['accuracy']), IP_MIN_ACCURACY_M)
        return LocationSample(
            latitude=fix['latitude'],
            longitude=fix['longitude'],
            accuracy_m=accuracy,
            source=LocationSource.IP,
            confidence=confidence_score('ip', accuracy),
            captured_at=self._clock(),
            provider=fix.get('provider'),
        )

    def _from_cache(self) -> Optional[LocationSample]:
        cached = self.cache.get(max_age=self.config.cache_max_age_sec)
        if cached is None:
            return None
        age = self.cache.age() or 0
        return replace(cached, source=LocationSource.CACHE,
                       confidence=confidence_score('cache', cached.accuracy_m, age_sec=age))

    def _from_default(self) -> Optional[LocationSample]:
        if not self.config.default_location:
            return None
        lat, lon = self.config.default_location
        return LocationSample(lat, lon, DEFAULT_ACCURACY_M, LocationSource.DEFAULT,
                              confidence_score('default', DEFAULT_ACCURACY_M), self._clock())


_STOPPED = object()


class LocationWatch:
    """Cancellable stream of samples.

    Samples arrive from sensor updates and, when background tracking is on,
    from a polling thread. Consume them by iterating, or through ``on_sample``.
    ``stop()`` releases the sensor subscription and the polling thread and is
    safe to call more than once; the watch is also a context manager.
    """

    MAX_BUFFERED = 100

    def __init__(self, resolver: LocationResolver, on_sample=None, on_error=None,
                 background=True, interval=10.0):
        self.resolver = resolver
        self.on_sample = on_sample
        self.on_error = on_error
        self.background = background
        self.interval = interval
        self._queue: queue.Queue = queue.Queue(maxsize=self.MAX_BUFFERED)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._unsubscribe: Optional[Callable] = None
        self._lock = threading.Lock()

    @property
    def is_active(self) -> bool:
        return not self._stop_event.is_set()

    def start(self):
        try:
            self._unsubscribe = self.resolver.sensor.subscribe(self._on_fix, self._on_sensor_error)
        except Unsupported:
            logger.info("Position sensor cannot be watched, relying on polling")
            self._unsubscribe = None

        if self.background:
            self._thread = threading.Thread(target=self._run_polling, name='location-watch', daemon=True)
            self._thread.start()

    def stop(self):
        with self._lock:
            if self._stop_event.is_set():
                return
            self._stop_event.set()
            unsubscribe, self._unsubscribe = self._unsubscribe, None

        try:
            if unsubscribe is not None:
                unsubscribe()
        finally:
            if self._thread and self._thread is not threading.current_thread():
                self._thread.join(timeout=5)
            self._push(_STOPPED)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    def __iter__(self):
        while True:
            item = self._queue.get()
            if item is _STOPPED:
                return
            yield item

    def _on_fix(self, fix: SensorFix):
        if self._stop_event.is_set():
            return
        self._deliver(self.resolver.accept_fix(fix))

    def _on_sensor_error(self, error: Exception):
        if self._stop_event.is_set():
            return
        if isinstance(error, PermissionDenied):
            self.resolver.deny_permission()
            self._fail(error)
            return
        try:
            self._deliver(self.resolver.resolve_fallback())
        except PositionUnavailable as e:
            self._fail(e)

    def _run_polling(self):
        while not self._stop_event.is_set():
            try:
                self._deliver(self.resolver.get_current())
            except (PermissionDenied, PositionUnavailable) as e:
                self._fail(e)
            except Exception as e:
                logger.exception("Location polling failed")
                self._fail(e)

            if self._stop_event.wait(self.interval):
                break

    def _deliver(self, sample: LocationSample):
        self._push(sample)
        if self.on_sample:
            try:
                self.on_sample(sample)
            except Exception:
                logger.exception("Location watch callback failed")

    def _fail(self, error: Exception):
        if self.on_error:
            try:
                self.on_error(error)
            except Exception:
                logger.exception("Location watch error callback failed")

    def _push(self, item):
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass
