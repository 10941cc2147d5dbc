"""
Location Sync v1.0
Connectivity tracking and delivery of location updates:
- Online / offline state with an optional health probe
- Sensor status reporting
- Persistent offline queue, flushed oldest first on reconnect
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

import requests

from fleettrack.models import db, OfflineLocationUpdate
from .errors import NetworkFailure, TripOperationError
from .retry import retry_call

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    HEALTH_INTERVAL_SEC = 30
    HEALTH_TIMEOUT_SEC = 5

    def __init__(self, health_url: Optional[str] = None, interval: Optional[float] = None,
                 session=None, clock: Callable[[], datetime] = datetime.now):
        self.health_url = health_url
        self.interval = interval or self.HEALTH_INTERVAL_SEC
        self.session = session or requests.Session()
        self._clock = clock
        self._online = True
        self._lock = threading.Lock()
        self.sensor_status = None
        self.last_sensor_ok_at: Optional[datetime] = None
        self.last_check_at: Optional[datetime] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self._callbacks: Dict[str, List[Callable]] = {
            'on_online': [],
            'on_offline': [],
            'on_sensor_status': [],
        }

    def register_callback(self, event: str, callback: Callable):
        if event in self._callbacks:
            self._callbacks[event].append(callback)

    def _emit(self, event: str, data):
        for callback in self._callbacks.get(event, []):
            try:
                callback(data)
            except Exception as e:
                logger.error("Callback error for %s: %s", event, e)

    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def set_online(self, online: bool):
        with self._lock:
            changed = self._online != online
            self._online = online

        if changed:
            logger.info("Connectivity changed: %s", 'online' if online else 'offline')
            self._emit('on_online' if online else 'on_offline', {'at': self._clock().isoformat()})

    def report_sensor_status(self, status):
        self.sensor_status = status
        if getattr(status, 'value', status) == 'available':
            self.last_sensor_ok_at = self._clock()
        self._emit('on_sensor_status', status)

    def check_health(self) -> bool:
        if not self.health_url:
            return self.is_online()
        try:
            response = self.session.get(self.health_url, timeout=self.HEALTH_TIMEOUT_SEC)
            online = response.status_code < 500
        except requests.RequestException as e:
            logger.debug("Health probe failed: %s", e)
            online = False
        self.last_check_at = self._clock()
        self.set_online(online)
        return online

    def start(self) -> bool:
        if not self.health_url or self._thread is not None:
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_probe, name='connectivity-probe', daemon=True)
        self._thread.start()
        return True

    def stop(self):
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.HEALTH_TIMEOUT_SEC + 1)
        self._thread = None

    def _run_probe(self):
        while not self._stop_event.is_set():
            self.check_health()
            if self._stop_event.wait(self.interval):
                break

    def get_status(self) -> dict:
        status = self.sensor_status
        return {
            'online': self.is_online(),
            'sensor_status': getattr(status, 'value', status),
            'last_sensor_ok_at': self.last_sensor_ok_at.isoformat() if self.last_sensor_ok_at else None,
            'last_check_at': self.last_check_at.isoformat() if self.last_check_at else None,
        }


class OfflineQueue:
    """Location updates waiting for connectivity, stored in the database."""

    def __init__(self, flask_app):
        self.flask_app = flask_app

    def enqueue(self, sample, trip_id=None):
        with self.flask_app.app_context():
            db.session.add(OfflineLocationUpdate.from_sample(sample, trip_id=trip_id))
            db.session.commit()

    def pending_count(self) -> int:
        with self.flask_app.app_context():
            return OfflineLocationUpdate.query.count()

    def pending(self, limit=100) -> list:
        with self.flask_app.app_context():
            rows = (OfflineLocationUpdate.query
                    .order_by(OfflineLocationUpdate.captured_at, OfflineLocationUpdate.id)
                    .limit(limit).all())
            return [row.to_dict() for row in rows]

    def flush(self, send: Callable) -> int:
        """Send queued updates oldest first. Stops at the first network failure."""
        sent = 0
        with self.flask_app.app_context():
            rows = (OfflineLocationUpdate.query
                    .order_by(OfflineLocationUpdate.captured_at, OfflineLocationUpdate.id)
                    .all())

            for row in rows:
                try:
                    send(row.to_sample(), row.trip_id)
                except NetworkFailure as e:
                    row.attempts = (row.attempts or 0) + 1
                    db.session.commit()
                    logger.info("Backfill stopped after %d updates: %s", sent, e)
                    break
                except TripOperationError as e:
                    logger.warning("Dropping rejected backfill update %s: %s", row.id, e)
                    db.session.delete(row)
                    db.session.commit()
                    continue

                db.session.delete(row)
                db.session.commit()
                sent += 1

        return sent


class LocationSync:
    def __init__(self, api, connectivity: ConnectivityMonitor, offline_queue: OfflineQueue,
                 duty_schedule=None, max_attempts: int = 3, retry_delay: float = 0.5,
                 sleep: Optional[Callable[[float], None]] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.api = api
        self.connectivity = connectivity
        self.offline_queue = offline_queue
        self.duty_schedule = duty_schedule
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._clock = clock
        self._flush_lock = threading.Lock()
        self.sent_count = 0
        self.queued_count = 0
        self.last_error: Optional[str] = None

        self._callbacks: Dict[str, List[Callable]] = {
            'on_location_sent': [],
        }

        connectivity.register_callback('on_online', lambda _: self.flush())

    def register_callback(self, event: str, callback: Callable):
        if event in self._callbacks:
            self._callbacks[event].append(callback)

    def _emit(self, event: str, data):
        for callback in self._callbacks.get(event, []):
            try:
                callback(data)
            except Exception as e:
                logger.error("Callback error for %s: %s", event, e)

    def is_online(self) -> bool:
        return self.connectivity.is_online()

    def report_sensor_status(self, status):
        self.connectivity.report_sensor_status(status)

    def queue_offline_update(self, sample, trip_id=None):
        self.offline_queue.enqueue(sample, trip_id=trip_id)
        self.queued_count += 1

    def send(self, sample, trip_id=None) -> bool:
        """Deliver a location update. Returns True when the server acknowledged it."""
        if self.duty_schedule is not None and not self.duty_schedule.is_within(self._clock()):
            logger.debug("Outside duty hours, location not sent")
            return False

        if not self.connectivity.is_online():
            self.queue_offline_update(sample, trip_id)
            return False

        try:
            self._deliver(sample, trip_id)
        except NetworkFailure as e:
            self.last_error = str(e)
            logger.warning("Location update failed, queued for later: %s", e)
            self.queue_offline_update(sample, trip_id)
            return False
        except TripOperationError as e:
            self.last_error = str(e)
            logger.warning("Location update rejected: %s", e)
            return False

        self.sent_count += 1
        self._emit('on_location_sent', sample)
        return True

    def flush(self) -> int:
        if not self._flush_lock.acquire(blocking=False):
            return 0
        try:
            sent = self.offline_queue.flush(
                lambda sample, trip_id: self._deliver(sample, trip_id, is_backfill=True))
        finally:
            self._flush_lock.release()

        if sent:
            logger.info("Backfilled %d offline location updates", sent)
        return sent

    def _deliver(self, sample, trip_id=None, is_backfill=False):
        return retry_call(
            lambda: self.api.update_location(sample, trip_id=trip_id, is_backfill=is_backfill),
            max_attempts=self.max_attempts,
            delay=self.retry_delay,
            retry_on=(NetworkFailure,),
            sleep=self._sleep,
        )

    def get_status(self) -> dict:
        status = self.connectivity.get_status()
        status.update({
            'pending': self.offline_queue.pending_count(),
            'sent': self.sent_count,
            'queued': self.queued_count,
            'last_error': self.last_error,
        })
        return status
