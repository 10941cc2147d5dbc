import logging

import requests

from fleettrack.intelligence.errors import NetworkFailure, TripOperationError

logger = logging.getLogger(__name__)


class TripApiClient:
    """HTTP transport for the vehicle trip endpoints."""

    def __init__(self, base_url, token=None, timeout=10.0, session=None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {'Accept': 'application/json'}
        if token:
            self.headers['Authorization'] = 'Bearer ' + token

    def _request(self, method, op, json_data=None):
        url = f"{self.base_url}/api/vehicles/{op}"
        try:
            response = self.session.request(method, url, json=json_data,
                                            headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkFailure(f"{op}: {e}") from e

        if response.status_code >= 500:
            raise NetworkFailure(f"{op}: server error {response.status_code}")

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}

        if response.status_code >= 400:
            message = data.get('error') or data.get('message') or f"{op} rejected"
            raise TripOperationError(message, status_code=response.status_code)

        return data

    def start_trip(self, latitude, longitude):
        data = self._request('POST', 'start-trip', {'latitude': latitude, 'longitude': longitude})
        trip = data.get('trip') or data
        return {
            'trip_id': trip.get('tripId') or trip.get('id'),
            'start_time': trip.get('startTime'),
        }

    def end_trip(self, latitude, longitude, distance_km=None):
        payload = {'latitude': latitude, 'longitude': longitude}
        if distance_km is not None:
            payload['distance'] = distance_km
        data = self._request('POST', 'end-trip', payload)
        return {'distance_km': _distance(data)}

    def auto_detect_trip(self, latitude, longitude, movement_type, movement_confidence,
                         destination=None):
        payload = {
            'latitude': latitude,
            'longitude': longitude,
            'movementType': movement_type,
            'movementConfidence': movement_confidence,
        }
        if destination:
            payload['destinationLatitude'] = destination[0]
            payload['destinationLongitude'] = destination[1]

        data = self._request('POST', 'auto-detect-trip', payload)
        trip = data.get('trip') or {}
        return {
            'trip_detected': bool(data.get('tripDetected')),
            'trip_id': data.get('tripId') or trip.get('id'),
            'start_time': trip.get('startTime'),
            'has_active_trip': bool(data.get('hasActiveTrip')),
        }

    def auto_complete_trip(self, latitude, longitude, reason):
        data = self._request('POST', 'auto-complete-trip',
                             {'latitude': latitude, 'longitude': longitude, 'reason': reason})
        return {'distance_km': _distance(data)}

    def active_trip(self):
        data = self._request('GET', 'active-trip')
        trip = data.get('trip')
        if not trip:
            return None
        return {
            'trip_id': trip.get('id'),
            'start_time': trip.get('startTime'),
            'start_latitude': trip.get('startLatitude'),
            'start_longitude': trip.get('startLongitude'),
            'distance_km': trip.get('distance') or 0.0,
            'is_auto_started': bool(trip.get('isAutoStarted')),
        }

    def update_location(self, sample, trip_id=None, is_backfill=False):
        payload = {
            'latitude': sample.latitude,
            'longitude': sample.longitude,
            'accuracy': sample.accuracy_m,
            'isFallback': sample.is_fallback,
            'locationSource': sample.source.value,
            'timestamp': sample.captured_at.isoformat(),
        }
        if trip_id is not None:
            payload['tripId'] = trip_id
        if is_backfill:
            payload['isBackfill'] = True
        return self._request('POST', 'update-location', payload)


def _distance(data):
    trip = data.get('trip') or {}
    value = data.get('distanceKm', data.get('distance', trip.get('distance')))
    return float(value) if value is not None else None
