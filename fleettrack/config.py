import os
from dataclasses import dataclass, field
from datetime import time
from typing import List, Optional, Tuple


DEFAULT_IP_PROVIDERS = ['ipinfo', 'ipapi', 'extreme-ip-lookup', 'geolocation-db']


def _env_float(name, default):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return float(value)


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return int(value)


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_point(name) -> Optional[Tuple[float, float]]:
    value = os.environ.get(name)
    if not value:
        return None
    lat, lon = value.split(',', 1)
    return float(lat), float(lon)


def _env_time(name) -> Optional[time]:
    value = os.environ.get(name)
    if not value:
        return None
    hours, minutes = value.split(':', 1)
    return time(int(hours), int(minutes))


def get_database_url():
    db_url = os.environ.get('DATABASE_URL')
    if db_url and db_url.startswith('postgres://'):
        db_url = db_url.replace('postgres://', 'postgresql://', 1)
    return db_url or 'sqlite:///fleettrack.db'


@dataclass
class TrackingConfig:
    # resolver
    sensor_timeout_sec: float = 30.0
    sensor_safety_margin_sec: float = 5.0
    tracking_interval_sec: float = 10.0
    background_tracking: bool = True
    cache_max_age_sec: float = 300.0
    ip_providers: List[str] = field(default_factory=lambda: list(DEFAULT_IP_PROVIDERS))
    ip_timeout_sec: float = 3.0
    default_location: Optional[Tuple[float, float]] = None

    # motion classifier
    motion_threshold: float = 1.2
    motion_interval_sec: float = 1.0
    motion_window_size: int = 20
    motion_error_threshold: int = 3
    motion_error_window_sec: float = 10.0

    # trip controller
    auto_start_distance_km: float = 0.8
    min_stationary_time_sec: float = 120.0
    min_vehicle_confidence: float = 0.65
    check_interval_sec: float = 10.0
    destination: Optional[Tuple[float, float]] = None
    duty_start: Optional[time] = None
    duty_end: Optional[time] = None
    duty_end_window_min: int = 15

    # remote api / sync
    api_base_url: str = 'http://localhost:5000'
    api_token: Optional[str] = None
    api_timeout_sec: float = 10.0
    health_url: Optional[str] = None
    health_interval_sec: float = 30.0
    sync_max_attempts: int = 3

    database_url: str = 'sqlite:///fleettrack.db'

    @classmethod
    def from_env(cls) -> 'TrackingConfig':
        defaults = cls()
        providers = os.environ.get('FLEETTRACK_IP_PROVIDERS')
        return cls(
            sensor_timeout_sec=_env_float('FLEETTRACK_SENSOR_TIMEOUT', defaults.sensor_timeout_sec),
            tracking_interval_sec=_env_float('FLEETTRACK_TRACKING_INTERVAL', defaults.tracking_interval_sec),
            background_tracking=_env_bool('FLEETTRACK_BACKGROUND_TRACKING', defaults.background_tracking),
            cache_max_age_sec=_env_float('FLEETTRACK_CACHE_MAX_AGE', defaults.cache_max_age_sec),
            ip_providers=[p.strip() for p in providers.split(',') if p.strip()] if providers else defaults.ip_providers,
            ip_timeout_sec=_env_float('FLEETTRACK_IP_TIMEOUT', defaults.ip_timeout_sec),
            default_location=_env_point('FLEETTRACK_DEFAULT_LOCATION'),
            motion_threshold=_env_float('FLEETTRACK_MOTION_THRESHOLD', defaults.motion_threshold),
            motion_interval_sec=_env_float('FLEETTRACK_MOTION_INTERVAL', defaults.motion_interval_sec),
            motion_window_size=_env_int('FLEETTRACK_MOTION_WINDOW', defaults.motion_window_size),
            auto_start_distance_km=_env_float('FLEETTRACK_AUTO_START_DISTANCE_KM', defaults.auto_start_distance_km),
            min_stationary_time_sec=_env_float('FLEETTRACK_MIN_STATIONARY_SEC', defaults.min_stationary_time_sec),
            min_vehicle_confidence=_env_float('FLEETTRACK_MIN_VEHICLE_CONFIDENCE', defaults.min_vehicle_confidence),
            check_interval_sec=_env_float('FLEETTRACK_CHECK_INTERVAL', defaults.check_interval_sec),
            destination=_env_point('FLEETTRACK_DESTINATION'),
            duty_start=_env_time('FLEETTRACK_DUTY_START'),
            duty_end=_env_time('FLEETTRACK_DUTY_END'),
            duty_end_window_min=_env_int('FLEETTRACK_DUTY_END_WINDOW', defaults.duty_end_window_min),
            api_base_url=os.environ.get('FLEETTRACK_API_URL', defaults.api_base_url),
            api_token=os.environ.get('FLEETTRACK_API_TOKEN'),
            api_timeout_sec=_env_float('FLEETTRACK_API_TIMEOUT', defaults.api_timeout_sec),
            health_url=os.environ.get('FLEETTRACK_HEALTH_URL'),
            database_url=get_database_url(),
        )
