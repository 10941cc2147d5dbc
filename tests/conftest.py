import threading
from datetime import datetime, timedelta

import pytest
import requests
from flask import Flask

from fleettrack.config import TrackingConfig
from fleettrack.models import db
from fleettrack.intelligence.errors import NetworkFailure
from fleettrack.intelligence.motion import MotionClassification, MovementType
from fleettrack.intelligence.resolver import LocationSample, LocationSource


class ManualClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)
        return self.now


class ManualMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


class FakeSensor:
    def __init__(self, fix=None, error=None, hang=False):
        self.fix = fix
        self.error = error
        self.hang = hang
        self.calls = 0
        self.release = threading.Event()
        self.listeners = []

    def get_position(self, timeout):
        self.calls += 1
        if self.hang:
            self.release.wait(5)
        if self.error is not None:
            raise self.error
        return self.fix

    def subscribe(self, on_fix, on_error=None):
        entry = (on_fix, on_error)
        self.listeners.append(entry)
        return lambda: self.listeners.remove(entry)


class FakeNetwork:
    def __init__(self, readings=None, error=None):
        self._readings = readings or []
        self.error = error
        self.calls = 0

    def readings(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self._readings)


class FakeIpLocator:
    def __init__(self, fix=None):
        self.fix = fix
        self.calls = 0

    def locate(self):
        self.calls += 1
        return self.fix


class FakeConnectivity:
    def __init__(self):
        self.statuses = []

    def report_sensor_status(self, status):
        self.statuses.append(status)


class FakeTripApi:
    def __init__(self):
        self.calls = []
        self.detect_result = {'trip_detected': False, 'trip_id': None, 'has_active_trip': False}
        self.active = None
        self.complete_distance = 12.5
        self.end_distance = 7.25
        self.fail_with = {}
        self.block = None
        self.sent = []

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        error = self.fail_with.get(name)
        if error is not None:
            raise error

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)

    def start_trip(self, latitude, longitude):
        self._record('start_trip', latitude, longitude)
        return {'trip_id': 'trip-1', 'start_time': None}

    def end_trip(self, latitude, longitude, distance_km=None):
        self._record('end_trip', latitude, longitude, distance_km)
        return {'distance_km': self.end_distance}

    def auto_detect_trip(self, latitude, longitude, movement_type, movement_confidence, destination=None):
        self._record('auto_detect_trip', latitude, longitude, movement_type, movement_confidence, destination)
        if self.block is not None:
            self.block.wait(5)
        return dict(self.detect_result)

    def auto_complete_trip(self, latitude, longitude, reason):
        self._record('auto_complete_trip', latitude, longitude, reason)
        return {'distance_km': self.complete_distance}

    def active_trip(self):
        self._record('active_trip')
        return self.active

    def update_location(self, sample, trip_id=None, is_backfill=False):
        self._record('update_location', sample, trip_id, is_backfill)
        self.sent.append((sample, trip_id, is_backfill))
        return {'success': True}


class FlakyTripApi(FakeTripApi):
    """update_location fails with NetworkFailure a configured number of times."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    def update_location(self, sample, trip_id=None, is_backfill=False):
        if self.failures > 0:
            self.failures -= 1
            self.calls.append(('update_location_failed', sample))
            raise NetworkFailure("connection reset")
        return super().update_location(sample, trip_id, is_backfill)


class FakeClassifier:
    def __init__(self, clock):
        self.clock = clock
        self.latest = None
        self.callbacks = []

    def register_callback(self, event, callback):
        self.callbacks.append(callback)

    def set(self, movement, confidence=0.8):
        self.latest = MotionClassification(MovementType(movement), confidence, self.clock(),
                                           movement in ('vehicle', 'walking'))
        for callback in self.callbacks:
            callback(self.latest)


class FakeResponse:
    def __init__(self, status_code=200, data=None):
        self.status_code = status_code
        self._data = data
        self.content = b'{}' if data is not None else b''

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, responses=None):
        self.responses = responses or {}
        self.requests = []

    def _answer(self, url):
        answer = self.responses.get(url)
        if isinstance(answer, Exception):
            raise answer
        return answer or FakeResponse(404, {'error': 'not found'})

    def get(self, url, **kwargs):
        self.requests.append(('GET', url, kwargs))
        return self._answer(url)

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        return self._answer(url)


def make_sample(lat=25.276, lon=51.520, accuracy=8.0, source=LocationSource.GPS, confidence=0.9,
                captured_at=None):
    return LocationSample(lat, lon, accuracy, source, confidence,
                          captured_at or datetime(2024, 5, 1, 9, 0, 0))


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config():
    return TrackingConfig(sensor_timeout_sec=0.2, sensor_safety_margin_sec=0.2,
                          destination=(25.2800, 51.5200), database_url='sqlite://')


@pytest.fixture
def flask_app():
    app = Flask(__name__)
    app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite://'
    db.init_app(app)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
