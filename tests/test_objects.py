import pytest
import requests

from fleettrack.objects.ip_geolocation import IpGeolocator, ip_accuracy, lookup
from fleettrack.objects.trip_client import TripApiClient
from fleettrack.intelligence.errors import NetworkFailure, TripOperationError

from conftest import FakeResponse, FakeSession, make_sample

BASE = 'http://fleet.test'


def client_with(op, answer):
    session = FakeSession({f"{BASE}/api/vehicles/{op}": answer})
    return TripApiClient(BASE + '/', token='secret', timeout=4, session=session), session


def test_start_trip_posts_coordinates():
    client, session = client_with('start-trip', FakeResponse(200, {'trip': {'id': 't-1', 'startTime': 'x'}}))

    assert client.start_trip(25.1, 51.2) == {'trip_id': 't-1', 'start_time': 'x'}
    method, url, kwargs = session.requests[0]
    assert method == 'POST'
    assert kwargs['json'] == {'latitude': 25.1, 'longitude': 51.2}
    assert kwargs['headers']['Authorization'] == 'Bearer secret'
    assert kwargs['timeout'] == 4


def test_rejection_raises_trip_operation_error():
    client, _ = client_with('start-trip', FakeResponse(400, {'error': 'Trip already active'}))

    with pytest.raises(TripOperationError) as info:
        client.start_trip(25.1, 51.2)
    assert str(info.value) == 'Trip already active'
    assert info.value.status_code == 400


@pytest.mark.parametrize('answer', [FakeResponse(502, {}), requests.ConnectionError("refused"),
                                    requests.Timeout("slow")])
def test_transport_problems_raise_network_failure(answer):
    client, _ = client_with('end-trip', answer)
    with pytest.raises(NetworkFailure):
        client.end_trip(25.1, 51.2)


def test_auto_detect_payload_and_response():
    client, session = client_with('auto-detect-trip', FakeResponse(200, {'tripDetected': True, 'tripId': 'a-1'}))

    result = client.auto_detect_trip(25.1, 51.2, 'vehicle', 0.8, destination=(25.3, 51.4))

    assert result['trip_detected'] is True
    assert result['trip_id'] == 'a-1'
    assert result['has_active_trip'] is False
    payload = session.requests[0][2]['json']
    assert payload['movementType'] == 'vehicle'
    assert payload['destinationLatitude'] == 25.3
    assert payload['destinationLongitude'] == 51.4


def test_auto_complete_returns_distance():
    client, session = client_with('auto-complete-trip', FakeResponse(200, {'trip': {'distance': 4.2}}))

    assert client.auto_complete_trip(25.1, 51.2, 'stationary') == {'distance_km': 4.2}
    assert session.requests[0][2]['json']['reason'] == 'stationary'


def test_active_trip():
    trip = {'id': 'x', 'startTime': '2024-05-01T08:00:00', 'startLatitude': 1.0, 'startLongitude': 2.0,
            'distance': 3.0, 'isAutoStarted': True}
    client, session = client_with('active-trip', FakeResponse(200, {'trip': trip}))

    result = client.active_trip()

    assert session.requests[0][0] == 'GET'
    assert result['trip_id'] == 'x'
    assert result['is_auto_started'] is True

    empty, _ = client_with('active-trip', FakeResponse(200, {'trip': None}))
    assert empty.active_trip() is None


def test_update_location_tags_fallback_and_backfill():
    client, session = client_with('update-location', FakeResponse(200, {'success': True}))

    client.update_location(make_sample(), trip_id='t-1', is_backfill=True)

    payload = session.requests[0][2]['json']
    assert payload['isFallback'] is False
    assert payload['locationSource'] == 'gps'
    assert payload['isBackfill'] is True
    assert payload['tripId'] == 't-1'


@pytest.mark.parametrize('data, accuracy', [
    ({'postal': '1000', 'city': 'Doha'}, 3000),
    ({'city': 'Doha'}, 5000),
    ({'region': 'Ad Dawhah'}, 25000),
    ({'country_name': 'Qatar'}, 100000),
    ({}, 5000),
])
def test_ip_accuracy_tiers(data, accuracy):
    assert ip_accuracy(data) == accuracy


def test_providers_are_tried_in_order():
    session = FakeSession({
        'https://ipinfo.io/json': requests.Timeout("slow"),
        'https://ipapi.co/json/': FakeResponse(200, {'latitude': 25.28, 'longitude': 51.52,
                                                     'city': 'Doha', 'country_name': 'Qatar'}),
    })
    locator = IpGeolocator(timeout=3.0, session=session)

    fix = locator.locate()

    assert fix['provider'] == 'ipapi'
    assert fix['accuracy'] == 5000
    assert fix['country'] == 'Qatar'
    assert [url for _, url, _ in session.requests] == ['https://ipinfo.io/json', 'https://ipapi.co/json/']
    assert all(kwargs['timeout'] == 3.0 for _, _, kwargs in session.requests)


def test_provider_with_impossible_coordinates_is_skipped():
    session = FakeSession({
        'https://ipinfo.io/json': FakeResponse(200, {'loc': '125.0,51.52', 'city': 'Doha'}),
        'https://ipapi.co/json/': FakeResponse(200, {'latitude': 25.28, 'longitude': 51.52, 'city': 'Doha'}),
    })

    fix = IpGeolocator(session=session).locate()

    assert fix['provider'] == 'ipapi'
    assert fix['latitude'] == 25.28


def test_ipinfo_loc_is_parsed():
    session = FakeSession({'https://ipinfo.io/json': FakeResponse(200, {'loc': '25.28,51.52', 'postal': '1'})})
    fix = lookup('ipinfo', session=session)
    assert (fix['latitude'], fix['longitude'], fix['accuracy']) == (25.28, 51.52, 3000)


def test_all_providers_failing_returns_none():
    locator = IpGeolocator(session=FakeSession())
    assert locator.locate() is None


def test_unknown_provider_is_rejected():
    with pytest.raises(ValueError):
        IpGeolocator(providers=['nowhere'])
