import pytest

from fleettrack.config import TrackingConfig
from fleettrack.main import create_app
from fleettrack.intelligence.sensors import NullPositionSensor

from conftest import FakeIpLocator, FakeTripApi, make_sample


@pytest.fixture
def api():
    return FakeTripApi()


@pytest.fixture
def app(api):
    config = TrackingConfig(database_url='sqlite://', destination=(25.28, 51.52), sensor_timeout_sec=0.1,
                            sensor_safety_margin_sec=0.1)
    app = create_app(config, async_mode='threading', api=api, ip_locator=FakeIpLocator(),
                     sensor=NullPositionSensor())
    app.config['TESTING'] = True
    yield app
    app.extensions['fleettrack'].stop()


@pytest.fixture
def client(app):
    return app.test_client()


def test_status_starts_idle(client):
    response = client.get('/api/trip')
    data = response.get_json()

    assert response.status_code == 200
    assert data['trip']['status'] == 'idle'
    assert data['motion'] is None


def test_manual_start_then_end(client, api):
    response = client.post('/api/trip/start', json={'latitude': 25.276, 'longitude': 51.52, 'accuracy': 8})
    assert response.status_code == 200
    assert response.get_json()['trip']['status'] == 'active'

    again = client.post('/api/trip/start', json={'latitude': 25.276, 'longitude': 51.52})
    assert again.status_code == 409
    assert again.get_json()['success'] is False

    ended = client.post('/api/trip/end', json={'latitude': 25.30, 'longitude': 51.52})
    assert ended.status_code == 200
    assert ended.get_json()['distance_km'] == 7.25
    assert client.get('/api/trip').get_json()['trip']['status'] == 'idle'


def test_end_without_trip_is_conflict(client):
    response = client.post('/api/trip/end', json={'latitude': 25.30, 'longitude': 51.52})
    assert response.status_code == 409


def test_start_without_any_fix_is_conflict(client, api):
    response = client.post('/api/trip/start', json={})
    assert response.status_code == 409
    assert api.count('start_trip') == 0


def test_route_analysis(client):
    points = [
        {'latitude': 25.2760, 'longitude': 51.52, 'timestamp': '2024-05-01T09:00:00'},
        {'latitude': 25.2805, 'longitude': 51.52, 'timestamp': '2024-05-01T09:01:00'},
        {'latitude': 25.28675, 'longitude': 51.52, 'timestamp': '2024-05-01T09:01:10'},
        {'latitude': 25.2850, 'longitude': 51.52, 'timestamp': '2024-05-01T09:02:00'},
    ]
    response = client.post('/api/route/analyze', json={'points': points, 'start': [25.276, 51.52]})
    data = response.get_json()

    assert response.status_code == 200
    assert data['total_points'] == 4
    assert data['filtered_points'] == 3
    assert data['distance_km'] == pytest.approx(1.0, abs=0.01)
    assert data['completion_status'] == 'INCOMPLETE'


def test_route_analysis_rejects_bad_points(client):
    response = client.post('/api/route/analyze', json={'points': [{'latitude': 1}]})
    assert response.status_code == 400


def test_sync_status_and_offline_toggle(client):
    data = client.get('/api/sync').get_json()
    assert data['online'] is True
    assert data['pending'] == 0

    data = client.post('/api/sync/online', json={'online': False}).get_json()
    assert data['online'] is False


def test_motion_ingest(client, app):
    response = client.post('/api/sensor/motion', json={'samples': [[3, 0, 0], [3, 0, 0]]})
    assert response.status_code == 200
    assert response.get_json()['count'] == 2

    bad = client.post('/api/sensor/motion', json={'x': 'a', 'y': 0, 'z': 0})
    assert bad.status_code == 400


def test_network_ingest(client, app):
    response = client.post('/api/sensor/network',
                           json={'readings': [{'latitude': 25.27, 'longitude': 51.52, 'accuracy': 40}]})
    assert response.status_code == 200
    assert app.extensions['fleettrack'].network.readings()[0].accuracy_m == 40


def test_position_ingest_validates(client):
    assert client.post('/api/sensor/position', json={'latitude': 'x'}).status_code == 400


def test_samples_flow_to_controller_and_sync(app, api):
    tracker = app.extensions['fleettrack']
    tracker.controller.start_trip(make_sample())

    tracker.handle_sample(make_sample(lat=25.285))

    assert tracker.controller.state.distance_km == pytest.approx(1.0, abs=0.01)
    assert api.sent[-1][1] == 'trip-1'
    assert api.sent[-1][2] is False


def test_tracker_start_and_stop(app, api):
    tracker = app.extensions['fleettrack']

    assert tracker.start() is True
    assert tracker.start() is False
    assert tracker.classifier.is_running
    assert api.count('active_trip') == 1

    tracker.stop()
    assert not tracker.is_running
    assert not tracker.classifier.is_running
    assert tracker.watch is None


def test_route_analysis_accepts_mixed_timestamp_formats(client):
    points = [
        {'latitude': 25.2760, 'longitude': 51.52, 'timestamp': '2024-05-01T09:00:00Z'},
        {'latitude': 25.2805, 'longitude': 51.52, 'timestamp': 1714554060000},
        {'latitude': 25.2850, 'longitude': 51.52, 'timestamp': '2024-05-01T09:02:00'},
    ]
    response = client.post('/api/route/analyze', json={'points': points})
    data = response.get_json()

    assert response.status_code == 200
    assert data['filtered_points'] == 3
    assert data['distance_km'] == pytest.approx(1.0, abs=0.01)


def test_route_analysis_rejects_impossible_endpoints(client):
    points = [{'latitude': 25.276, 'longitude': 51.52, 'timestamp': '2024-05-01T09:00:00'}]
    response = client.post('/api/route/analyze', json={'points': points, 'start': [95, 51.52]})
    assert response.status_code == 400


@pytest.mark.parametrize('body', [
    {'latitude': 'abc', 'longitude': 51.52},
    {'latitude': 'nan', 'longitude': 51.52, 'accuracy': 5},
    {'latitude': 25.276, 'longitude': 'inf'},
    {'latitude': 91, 'longitude': 51.52},
    {'latitude': 25.276, 'longitude': 51.52, 'accuracy': -5},
])
def test_trip_start_rejects_bad_positions(client, app, api, body):
    response = client.post('/api/trip/start', json=body)

    assert response.status_code == 400
    assert response.get_json()['success'] is False
    assert api.count('start_trip') == 0
    tracker = app.extensions['fleettrack']
    assert tracker.controller.state.status.value == 'idle'
    assert tracker.cache.get() is None


def test_trip_end_rejects_bad_positions(client):
    client.post('/api/trip/start', json={'latitude': 25.276, 'longitude': 51.52, 'accuracy': 8})
    response = client.post('/api/trip/end', json={'latitude': 'nan', 'longitude': 51.52})
    assert response.status_code == 400
    assert client.get('/api/trip').get_json()['trip']['status'] == 'active'


@pytest.mark.parametrize('body', [
    {'latitude': 'nan', 'longitude': 51.52},
    {'latitude': 25.276, 'longitude': 200},
])
def test_position_ingest_rejects_impossible_coordinates(client, body):
    assert client.post('/api/sensor/position', json=body).status_code == 400


def test_network_ingest_rejects_impossible_coordinates(client, app):
    response = client.post('/api/sensor/network',
                           json={'readings': [{'latitude': -95, 'longitude': 51.52, 'accuracy': 40}]})
    assert response.status_code == 400
    assert app.extensions['fleettrack'].network.readings() == []
