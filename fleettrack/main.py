import logging
import os

from flask import Flask, request, jsonify, current_app
from flask_socketio import SocketIO

from fleettrack.config import TrackingConfig
from fleettrack.models import db
from fleettrack.tracker import Tracker
from fleettrack.intelligence.errors import (NetworkFailure, PermissionDenied, PositionUnavailable,
                                            TripOperationError)
from fleettrack.intelligence.geometry import check_coordinate
from fleettrack.intelligence.resolver import NetworkReading, SensorFix
from fleettrack.intelligence.route import RoutePoint, summarize_route

logger = logging.getLogger(__name__)

socketio = SocketIO()


def _fail(message, status):
    return jsonify({'success': False, 'error': message}), status


def _tracker() -> Tracker:
    return current_app.extensions['fleettrack']


def _point(value):
    if value is None:
        return None
    lat, lon = float(value[0]), float(value[1])
    check_coordinate(lat, lon)
    return lat, lon


def create_app(config=None, start_tracking=False, async_mode=None, **tracker_options):
    config = config or TrackingConfig.from_env()

    app = Flask(__name__)
    app.secret_key = os.environ.get('FLASK_SECRET_KEY', 'fleettrack-dev')
    app.config['SQLALCHEMY_DATABASE_URI'] = config.database_url
    if not config.database_url.startswith('sqlite'):
        app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
            'pool_recycle': 300,
            'pool_pre_ping': True,
            'connect_args': {'connect_timeout': 10}
        }

    db.init_app(app)
    with app.app_context():
        db.create_all()

    socketio.init_app(app, cors_allowed_origins="*", async_mode=async_mode)

    tracker = Tracker(config, app, **tracker_options)
    app.extensions['fleettrack'] = tracker

    tracker.controller.register_callback(
        'on_trip_started', lambda data: socketio.emit('trip_started', data))
    tracker.controller.register_callback(
        'on_trip_ended', lambda data: socketio.emit('trip_ended', data))
    tracker.controller.register_callback(
        'on_location', lambda data: socketio.emit('location', data))

    _register_routes(app)

    if start_tracking:
        tracker.start()

    return app


def _register_routes(app):

    @app.errorhandler(TripOperationError)
    def trip_rejected(e):
        return _fail(str(e), 409)

    @app.errorhandler(NetworkFailure)
    def network_failed(e):
        return _fail(str(e), 503)

    @app.errorhandler(PositionUnavailable)
    @app.errorhandler(PermissionDenied)
    def no_position(e):
        return _fail(str(e), 422)

    @app.route('/api/trip')
    def trip_status():
        return jsonify({'success': True, **_tracker().get_status()})

    @app.route('/api/trip/start', methods=['POST'])
    def start_trip():
        tracker = _tracker()
        try:
            sample = _fix_from_body(tracker)
        except (TypeError, ValueError) as e:
            return _fail(f"Invalid position: {e}", 400)
        state = tracker.controller.start_trip(sample)
        return jsonify({'success': True, 'trip': state.to_dict()})

    @app.route('/api/trip/end', methods=['POST'])
    def end_trip():
        tracker = _tracker()
        try:
            sample = _fix_from_body(tracker)
        except (TypeError, ValueError) as e:
            return _fail(f"Invalid position: {e}", 400)
        summary = tracker.controller.end_trip(sample)
        return jsonify({'success': True, **summary})

    @app.route('/api/route/analyze', methods=['POST'])
    def analyze_route():
        data = request.get_json(silent=True) or {}
        try:
            points = [RoutePoint.from_dict(p) for p in data.get('points', [])]
            start = _point(data.get('start'))
            target_end = _point(data.get('target_end'))
        except (KeyError, TypeError, ValueError, IndexError, OverflowError) as e:
            return _fail(f"Invalid route: {e}", 400)

        summary = summarize_route(points, start=start, target_end=target_end)
        return jsonify({'success': True, **summary.to_dict()})

    @app.route('/api/sync')
    def sync_status():
        return jsonify({'success': True, **_tracker().sync.get_status()})

    @app.route('/api/sync/online', methods=['POST'])
    def set_online():
        data = request.get_json(silent=True) or {}
        tracker = _tracker()
        tracker.connectivity.set_online(bool(data.get('online', True)))
        return jsonify({'success': True, **tracker.sync.get_status()})

    @app.route('/api/sensor/position', methods=['POST'])
    def sensor_position():
        data = request.get_json(silent=True) or {}
        tracker = _tracker()

        error = data.get('error')
        if error:
            if error == 'permission_denied':
                tracker.sensor.push_error(PermissionDenied("Location permission denied on device"))
            else:
                tracker.sensor.push_error(PositionUnavailable(f"Device reported {error}"))
            return jsonify({'success': True})

        if data.get('permission_granted'):
            tracker.resolver.grant_permission()

        try:
            fix = SensorFix(float(data['latitude']), float(data['longitude']),
                            float(data.get('accuracy') or 0) or 50.0)
        except (KeyError, TypeError, ValueError) as e:
            return _fail(f"Invalid position: {e}", 400)

        tracker.sensor.push(fix)
        return jsonify({'success': True})

    @app.route('/api/sensor/network', methods=['POST'])
    def sensor_network():
        data = request.get_json(silent=True) or {}
        try:
            readings = [NetworkReading(float(r['latitude']), float(r['longitude']), float(r['accuracy']))
                        for r in data.get('readings', [])]
        except (KeyError, TypeError, ValueError) as e:
            return _fail(f"Invalid network readings: {e}", 400)

        _tracker().network.push(readings)
        return jsonify({'success': True, 'count': len(readings)})

    @app.route('/api/sensor/motion', methods=['POST'])
    def sensor_motion():
        data = request.get_json(silent=True) or {}
        samples = data.get('samples') or [[data.get('x'), data.get('y'), data.get('z')]]
        accelerometer = _tracker().accelerometer
        try:
            for x, y, z in samples:
                accelerometer.push(float(x), float(y), float(z))
        except (TypeError, ValueError) as e:
            return _fail(f"Invalid motion sample: {e}", 400)
        return jsonify({'success': True, 'count': len(samples)})


def _fix_from_body(tracker):
    data = request.get_json(silent=True) or {}
    if data.get('latitude') is None or data.get('longitude') is None:
        return None
    fix = SensorFix(float(data['latitude']), float(data['longitude']),
                    float(data.get('accuracy') or 0) or 50.0)
    return tracker.resolver.accept_fix(fix)
