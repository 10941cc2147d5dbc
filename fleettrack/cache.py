import time
from threading import Lock

CACHE_TTL = {
    'position': 300,
}


class PositionCache:
    """Last known good position, written only by the location resolver."""

    def __init__(self, ttl=None, clock=None):
        self.ttl = ttl if ttl is not None else CACHE_TTL['position']
        self._clock = clock or time.time
        self._entry = None
        self._lock = Lock()

    def set(self, sample):
        with self._lock:
            self._entry = {
                'data': sample,
                'timestamp': self._clock()
            }

    def get(self, max_age=None):
        max_age = self.ttl if max_age is None else max_age
        with self._lock:
            if self._entry is None:
                return None
            if self._clock() - self._entry['timestamp'] < max_age:
                return self._entry['data']
        return None

    def age(self):
        with self._lock:
            if self._entry is None:
                return None
            return self._clock() - self._entry['timestamp']
