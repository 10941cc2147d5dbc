"""
Trip Lifecycle Controller v2.0
Idle / Active state machine for a vehicle trip:
- Auto-start on vehicle motion, confirmed by the server or by the destination geofence
- Auto-end after a continuous stationary period
- Manual start / end
- Forced end at the end of duty hours
- Rehydration of an already active trip on startup
At most one start/end evaluation runs at a time; overlapping triggers are skipped.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .errors import NetworkFailure, TripOperationError, TrackingError
from .geometry import haversine_km, is_within_radius_km
from .motion import MotionClassification, MovementType
from .resolver import LocationSample

logger = logging.getLogger(__name__)


class TripStatus(Enum):
    IDLE = 'idle'
    ACTIVE = 'active'


class EndReason(Enum):
    MANUAL = 'manual'
    STATIONARY = 'stationary'
    DUTY_HOURS_ENDED = 'duty_hours_ended'


@dataclass(frozen=True)
class TripState:
    status: TripStatus = TripStatus.IDLE
    trip_id: Optional[str] = None
    started_at: Optional[datetime] = None
    start_location: Optional[Tuple[float, float]] = None
    last_location: Optional[LocationSample] = None
    is_auto_started: bool = False
    distance_km: float = 0.0

    @property
    def is_active(self) -> bool:
        return self.status is TripStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            'status': self.status.value,
            'trip_id': self.trip_id,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'start_location': list(self.start_location) if self.start_location else None,
            'last_location': self.last_location.to_dict() if self.last_location else None,
            'is_auto_started': self.is_auto_started,
            'distance_km': round(self.distance_km, 3),
        }


def _parse_time(value, fallback: datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            pass
    return fallback


class TripController:
    def __init__(self, api, classifier, config, duty_schedule=None, resolver=None,
                 clock: Callable[[], datetime] = datetime.now):
        self.api = api
        self.classifier = classifier
        self.config = config
        self.duty_schedule = duty_schedule
        self.resolver = resolver
        self._clock = clock

        self.auto_start_distance_km = config.auto_start_distance_km
        self.min_stationary_time_sec = config.min_stationary_time_sec
        self.min_vehicle_confidence = config.min_vehicle_confidence
        self.check_interval_sec = config.check_interval_sec
        self.destination: Optional[Tuple[float, float]] = config.destination

        self._state = TripState()
        self._state_lock = threading.RLock()
        self._busy = threading.Lock()
        self._last_moving_at: Optional[datetime] = None
        self._moving_observed = False

        self.last_sample: Optional[LocationSample] = None
        self.last_error: Optional[str] = None
        self.skipped_evaluations = 0
        self.is_running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self._callbacks: Dict[str, List[Callable]] = {
            'on_trip_started': [],
            'on_trip_ended': [],
            'on_location': [],
            'on_error': [],
        }

        if classifier is not None:
            classifier.register_callback('on_classification', self.observe_motion)

    @property
    def state(self) -> TripState:
        with self._state_lock:
            return self._state

    def register_callback(self, event: str, callback: Callable):
        if event in self._callbacks:
            self._callbacks[event].append(callback)

    def _emit(self, event: str, data: dict):
        for callback in self._callbacks.get(event, []):
            try:
                callback(data)
            except Exception as e:
                logger.error("Callback error for %s: %s", event, e)

    def start(self) -> bool:
        if self.is_running:
            return False
        self._stop_event.clear()
        self.is_running = True
        self._thread = threading.Thread(target=self._run_checks, name='trip-controller', daemon=True)
        self._thread.start()
        return True

    def stop(self):
        self._stop_event.set()
        self.is_running = False
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=10)
        self._thread = None

    def _run_checks(self):
        while not self._stop_event.wait(self.check_interval_sec):
            try:
                self.evaluate()
            except Exception as e:
                self._fail(e)

    # -- inputs --

    def on_location(self, sample: LocationSample):
        with self._state_lock:
            self.last_sample = sample
            state = self._state
            if state.is_active:
                added = 0.0
                previous = state.last_location
                if previous is not None and not previous.is_fallback and not sample.is_fallback:
                    added = haversine_km(previous.latitude, previous.longitude,
                                         sample.latitude, sample.longitude)
                self._state = replace(state, last_location=sample,
                                      distance_km=state.distance_km + added)

        self._emit('on_location', {'sample': sample.to_dict(), 'trip': self.state.to_dict()})
        self.evaluate()

    def observe_motion(self, classification: MotionClassification):
        if classification.type in (MovementType.VEHICLE, MovementType.WALKING):
            with self._state_lock:
                self._last_moving_at = classification.evaluated_at
                self._moving_observed = True

    def on_location_sent(self, sample: LocationSample):
        if self.duty_schedule is None or not self.state.is_active:
            return
        if not self.duty_schedule.is_end_of_duty(self._clock()):
            return

        if not self._busy.acquire(blocking=False):
            self.skipped_evaluations += 1
            return
        try:
            if self.state.is_active:
                logger.info("Duty hours ended, closing active trip")
                self._complete(sample, EndReason.DUTY_HOURS_ENDED)
        except TrackingError as e:
            self._fail(e)
        finally:
            self._busy.release()

    # -- automatic transitions --

    def evaluate(self) -> bool:
        """Run one automatic start/end evaluation. Returns False if one was already in flight."""
        if not self._busy.acquire(blocking=False):
            self.skipped_evaluations += 1
            return False
        try:
            if self.state.is_active:
                self._maybe_auto_end()
            else:
                self._maybe_auto_start()
        except TrackingError as e:
            self._fail(e)
        finally:
            self._busy.release()
        return True

    def _maybe_auto_start(self):
        sample = self.last_sample
        classification = self.classifier.latest if self.classifier is not None else None
        if sample is None or classification is None:
            return
        if classification.type is not MovementType.VEHICLE:
            return
        if classification.confidence < self.min_vehicle_confidence:
            return

        result = self.api.auto_detect_trip(sample.latitude, sample.longitude,
                                           classification.type.value, classification.confidence,
                                           destination=self.destination)

        if result.get('trip_detected'):
            logger.info("Server detected trip start")
            self._activate(result.get('trip_id'), result.get('start_time'), sample, auto=True)
            return

        if result.get('has_active_trip'):
            self.rehydrate()
            return

        if self.destination and is_within_radius_km(sample.latitude, sample.longitude,
                                                    self.destination[0], self.destination[1],
                                                    self.auto_start_distance_km):
            logger.info("Within %.2fkm of destination, starting trip", self.auto_start_distance_km)
            started = self.api.start_trip(sample.latitude, sample.longitude)
            self._activate(started.get('trip_id'), started.get('start_time'), sample, auto=True)

    def _maybe_auto_end(self):
        classification = self.classifier.latest if self.classifier is not None else None
        if classification is None:
            return

        if classification.type in (MovementType.VEHICLE, MovementType.WALKING):
            self.observe_motion(classification)
            return

        with self._state_lock:
            last_moving_at = self._last_moving_at
            moving_observed = self._moving_observed

        is_stationary = (classification.type is MovementType.STATIONARY or
                         (classification.type is MovementType.UNKNOWN and moving_observed))
        if not is_stationary or last_moving_at is None:
            return

        stationary_for = (self._clock() - last_moving_at).total_seconds()
        if stationary_for < self.min_stationary_time_sec:
            return

        sample = self.state.last_location or self.last_sample
        if sample is None:
            return

        logger.info("Stationary for %.0fs, completing trip", stationary_for)
        self._complete(sample, EndReason.STATIONARY)

    # -- manual transitions --

    def start_trip(self, sample: Optional[LocationSample] = None) -> TripState:
        with self._busy:
            if self.state.is_active:
                raise TripOperationError("A trip is already active")
            sample = self._require_fix(sample)
            started = self.api.start_trip(sample.latitude, sample.longitude)
            return self._activate(started.get('trip_id'), started.get('start_time'), sample, auto=False)

    def end_trip(self, sample: Optional[LocationSample] = None) -> dict:
        with self._busy:
            if not self.state.is_active:
                raise TripOperationError("No active trip to end")
            sample = self._require_fix(sample)
            result = self.api.end_trip(sample.latitude, sample.longitude, self.state.distance_km)
            return self._deactivate(EndReason.MANUAL, result.get('distance_km'))

    def rehydrate(self) -> TripState:
        trip = self.api.active_trip()
        if not trip:
            return self.state

        start = None
        if trip.get('start_latitude') is not None and trip.get('start_longitude') is not None:
            start = (float(trip['start_latitude']), float(trip['start_longitude']))

        now = self._clock()
        with self._state_lock:
            self._state = TripState(
                status=TripStatus.ACTIVE,
                trip_id=trip.get('trip_id'),
                started_at=_parse_time(trip.get('start_time'), now),
                start_location=start,
                last_location=self.last_sample,
                is_auto_started=trip.get('is_auto_started', False),
                distance_km=float(trip.get('distance_km') or 0.0),
            )
            self._last_moving_at = now
            self._moving_observed = False
            state = self._state

        logger.info("Rehydrated active trip %s", state.trip_id)
        self._emit('on_trip_started', {'trip': state.to_dict(), 'rehydrated': True})
        return state

    def get_status(self) -> dict:
        return {
            'trip': self.state.to_dict(),
            'is_running': self.is_running,
            'destination': list(self.destination) if self.destination else None,
            'last_error': self.last_error,
            'skipped_evaluations': self.skipped_evaluations,
        }

    # -- transitions --

    def _require_fix(self, sample: Optional[LocationSample]) -> LocationSample:
        if sample is not None:
            self.last_sample = sample
            return sample
        if self.resolver is not None:
            try:
                sample = self.resolver.get_current()
            except TrackingError as e:
                raise TripOperationError(f"A current location fix is required: {e}") from e
            self.last_sample = sample
            return sample
        if self.last_sample is not None:
            return self.last_sample
        raise TripOperationError("A current location fix is required")

    def _activate(self, trip_id, start_time, sample: LocationSample, auto: bool) -> TripState:
        now = self._clock()
        with self._state_lock:
            self._state = TripState(
                status=TripStatus.ACTIVE,
                trip_id=trip_id,
                started_at=_parse_time(start_time, now),
                start_location=(sample.latitude, sample.longitude),
                last_location=sample,
                is_auto_started=auto,
                distance_km=0.0,
            )
            self._last_moving_at = now
            self._moving_observed = False
            state = self._state

        logger.info("Trip %s started (%s)", trip_id, 'auto' if auto else 'manual')
        self._emit('on_trip_started', {'trip': state.to_dict(), 'rehydrated': False})
        return state

    def _complete(self, sample: LocationSample, reason: EndReason) -> dict:
        result = self.api.auto_complete_trip(sample.latitude, sample.longitude, reason.value)
        return self._deactivate(reason, result.get('distance_km'))

    def _deactivate(self, reason: EndReason, distance_km: Optional[float]) -> dict:
        with self._state_lock:
            ended = self._state
            if distance_km is not None:
                ended = replace(ended, distance_km=distance_km)
            self._state = TripState()
            self._last_moving_at = None
            self._moving_observed = False

        summary = {'trip': ended.to_dict(), 'reason': reason.value, 'distance_km': ended.distance_km}
        logger.info("Trip %s ended (%s, %.2fkm)", ended.trip_id, reason.value, ended.distance_km)
        self._emit('on_trip_ended', summary)
        return summary

    def _fail(self, error: Exception):
        self.last_error = str(error)
        level = logging.WARNING if isinstance(error, NetworkFailure) else logging.ERROR
        logger.log(level, "Trip evaluation failed: %s", error)
        self._emit('on_error', {'error': self.last_error})
