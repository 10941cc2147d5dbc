import logging
from datetime import datetime

from fleettrack.cache import PositionCache
from fleettrack.objects.ip_geolocation import IpGeolocator
from fleettrack.objects.trip_client import TripApiClient
from fleettrack.intelligence.controller import TripController
from fleettrack.intelligence.duty_hours import DutySchedule
from fleettrack.intelligence.errors import TrackingError
from fleettrack.intelligence.motion import MotionClassifier
from fleettrack.intelligence.resolver import LocationResolver
from fleettrack.intelligence.sensors import PushAccelerometer, PushNetworkSource, PushPositionSensor
from fleettrack.intelligence.sync import ConnectivityMonitor, LocationSync, OfflineQueue

logger = logging.getLogger(__name__)


class Tracker:
    """Wires the resolver, classifier, trip controller and sync service together."""

    def __init__(self, config, flask_app, api=None, sensor=None, network=None, accelerometer=None,
                 ip_locator=None, connectivity=None, clock=datetime.now, sleep=None):
        self.config = config
        self.api = api or TripApiClient(config.api_base_url, token=config.api_token,
                                        timeout=config.api_timeout_sec)
        self.sensor = sensor if sensor is not None else PushPositionSensor()
        self.network = network if network is not None else PushNetworkSource()
        self.accelerometer = accelerometer if accelerometer is not None else PushAccelerometer()
        self.ip_locator = ip_locator if ip_locator is not None else IpGeolocator(
            config.ip_providers, timeout=config.ip_timeout_sec)

        self.duty_schedule = DutySchedule.from_config(config)
        self.cache = PositionCache(ttl=config.cache_max_age_sec)
        self.connectivity = connectivity or ConnectivityMonitor(config.health_url,
                                                                interval=config.health_interval_sec)
        self.sync = LocationSync(self.api, self.connectivity, OfflineQueue(flask_app),
                                 duty_schedule=self.duty_schedule,
                                 max_attempts=config.sync_max_attempts, sleep=sleep, clock=clock)
        self.resolver = LocationResolver(self.sensor, config, self.cache, network=self.network,
                                         ip_locator=self.ip_locator, connectivity=self.connectivity,
                                         clock=clock)
        self.classifier = MotionClassifier.from_config(config, accelerometer=self.accelerometer,
                                                       clock=clock)
        self.controller = TripController(self.api, self.classifier, config,
                                         duty_schedule=self.duty_schedule, resolver=self.resolver,
                                         clock=clock)

        self.sync.register_callback('on_location_sent', self.controller.on_location_sent)
        self.classifier.register_callback('on_breaker_tripped', self._on_breaker_tripped)

        self.watch = None
        self.is_running = False

    def start(self) -> bool:
        if self.is_running:
            return False
        self.is_running = True

        self.connectivity.start()
        self.classifier.start()
        try:
            self.controller.rehydrate()
        except TrackingError as e:
            logger.warning("Could not rehydrate active trip: %s", e)
        self.controller.start()
        self.watch = self.resolver.watch(on_sample=self.handle_sample, on_error=self._on_location_error)
        logger.info("Tracking started")
        return True

    def stop(self):
        if not self.is_running:
            return
        self.is_running = False
        try:
            if self.watch is not None:
                self.watch.stop()
        finally:
            self.watch = None
            self.controller.stop()
            self.classifier.stop()
            self.connectivity.stop()
            self.resolver.shutdown()
        logger.info("Tracking stopped")

    def handle_sample(self, sample):
        self.controller.on_location(sample)
        self.sync.send(sample, trip_id=self.controller.state.trip_id)

    def get_status(self) -> dict:
        latest = self.classifier.latest
        last_sample = self.resolver.last_sample
        return {
            'is_running': self.is_running,
            'trip': self.controller.state.to_dict(),
            'motion': latest.to_dict() if latest else None,
            'location': last_sample.to_dict() if last_sample else None,
            'duty_hours': self.duty_schedule.to_dict(),
            'last_error': self.controller.last_error or self.resolver.last_error,
        }

    def _on_location_error(self, error):
        logger.warning("Location unavailable: %s", error)

    def _on_breaker_tripped(self, error):
        logger.error("%s", error)
