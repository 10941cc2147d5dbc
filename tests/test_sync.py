from datetime import datetime, time, timedelta

import pytest

from fleettrack.intelligence.duty_hours import DutySchedule
from fleettrack.intelligence.errors import TripOperationError
from fleettrack.intelligence.resolver import LocationSource, SensorStatus
from fleettrack.intelligence.sync import ConnectivityMonitor, LocationSync, OfflineQueue

from conftest import FakeResponse, FakeSession, FakeTripApi, FlakyTripApi, make_sample

T0 = datetime(2024, 5, 1, 9, 0, 0)


def make_sync(flask_app, api, connectivity=None, duty_schedule=None, clock=None):
    connectivity = connectivity or ConnectivityMonitor()
    return LocationSync(api, connectivity, OfflineQueue(flask_app), duty_schedule=duty_schedule,
                        max_attempts=3, sleep=lambda _: None, clock=clock or (lambda: T0))


def test_online_send_notifies_listeners(flask_app):
    api = FakeTripApi()
    sync = make_sync(flask_app, api)
    sent = []
    sync.register_callback('on_location_sent', sent.append)
    sample = make_sample()

    assert sync.send(sample, trip_id='trip-1') is True
    assert api.sent == [(sample, 'trip-1', False)]
    assert sent == [sample]


def test_offline_updates_are_queued(flask_app):
    api = FakeTripApi()
    connectivity = ConnectivityMonitor()
    connectivity.set_online(False)
    sync = make_sync(flask_app, api, connectivity)

    assert sync.send(make_sample()) is False
    assert api.sent == []
    assert sync.offline_queue.pending_count() == 1


def test_network_failure_is_retried_then_queued(flask_app):
    api = FlakyTripApi(failures=3)
    sync = make_sync(flask_app, api)

    assert sync.send(make_sample()) is False
    assert api.count('update_location_failed') == 3
    assert sync.offline_queue.pending_count() == 1


def test_transient_failure_recovers_within_retries(flask_app):
    api = FlakyTripApi(failures=2)
    sync = make_sync(flask_app, api)

    assert sync.send(make_sample()) is True
    assert sync.offline_queue.pending_count() == 0


def test_reconnect_flushes_in_chronological_order(flask_app):
    api = FakeTripApi()
    connectivity = ConnectivityMonitor()
    connectivity.set_online(False)
    sync = make_sync(flask_app, api, connectivity)

    late = make_sample(lat=25.3, captured_at=T0 + timedelta(minutes=2))
    early = make_sample(lat=25.1, accuracy=5000, source=LocationSource.IP, confidence=0.4, captured_at=T0)
    sync.send(late, trip_id='trip-1')
    sync.send(early, trip_id='trip-1')

    connectivity.set_online(True)

    assert [s.latitude for s, _, _ in api.sent] == [25.1, 25.3]
    assert all(backfill for _, _, backfill in api.sent)
    assert api.sent[0][0].is_fallback
    assert api.sent[0][0].source is LocationSource.IP
    assert api.sent[0][1] == 'trip-1'
    assert sync.offline_queue.pending_count() == 0


def test_flush_stops_at_first_failure(flask_app):
    api = FlakyTripApi(failures=0)
    sync = make_sync(flask_app, api)
    for minute in range(3):
        sync.queue_offline_update(make_sample(captured_at=T0 + timedelta(minutes=minute)))

    api.failures = 3
    assert sync.flush() == 0
    assert sync.offline_queue.pending_count() == 3
    assert sync.offline_queue.pending()[0]['attempts'] == 1

    assert sync.flush() == 3
    assert sync.offline_queue.pending_count() == 0


def test_rejected_backfill_is_dropped(flask_app):
    api = FakeTripApi()
    sync = make_sync(flask_app, api)
    sync.queue_offline_update(make_sample())
    api.fail_with['update_location'] = TripOperationError("bad payload", 400)

    assert sync.flush() == 0
    assert sync.offline_queue.pending_count() == 0


def test_outside_duty_hours_nothing_is_sent(flask_app):
    api = FakeTripApi()
    duty = DutySchedule(time(8), time(17))
    sync = make_sync(flask_app, api, duty_schedule=duty, clock=lambda: datetime(2024, 5, 1, 20, 0))

    assert sync.send(make_sample()) is False
    assert api.sent == []
    assert sync.offline_queue.pending_count() == 0


def test_sensor_status_is_tracked():
    connectivity = ConnectivityMonitor(clock=lambda: T0)
    seen = []
    connectivity.register_callback('on_sensor_status', seen.append)

    connectivity.report_sensor_status(SensorStatus.TIMEOUT)
    assert connectivity.last_sensor_ok_at is None
    connectivity.report_sensor_status(SensorStatus.AVAILABLE)

    status = connectivity.get_status()
    assert status['sensor_status'] == 'available'
    assert status['last_sensor_ok_at'] == T0.isoformat()
    assert seen == [SensorStatus.TIMEOUT, SensorStatus.AVAILABLE]


@pytest.mark.parametrize('answer, online', [(FakeResponse(200, {}), True), (FakeResponse(503, {}), False)])
def test_health_probe_sets_connectivity(answer, online):
    session = FakeSession({'http://api.test/health': answer})
    connectivity = ConnectivityMonitor('http://api.test/health', session=session)

    assert connectivity.check_health() is online
    assert connectivity.is_online() is online


def test_health_probe_failure_means_offline():
    import requests

    session = FakeSession({'http://api.test/health': requests.ConnectionError("refused")})
    connectivity = ConnectivityMonitor('http://api.test/health', session=session)

    assert connectivity.check_health() is False
    assert not connectivity.is_online()
