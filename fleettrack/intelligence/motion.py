"""
Motion Classifier
Bounded window of acceleration magnitudes sampled on a fixed tick:
- Moving confidence = share of samples above the movement threshold
- Movement type from the moving flag and the window's variation
- Circuit breaker: repeated processing errors disable the classifier
"""

import logging
import math
import statistics
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple

from .errors import CircuitBreakerTripped, Unsupported

logger = logging.getLogger(__name__)


class MovementType(Enum):
    STATIONARY = 'stationary'
    WALKING = 'walking'
    VEHICLE = 'vehicle'
    UNKNOWN = 'unknown'


@dataclass
class MotionClassification:
    type: MovementType
    confidence: float
    evaluated_at: datetime
    is_moving: bool = False
    # share of the window above the motion threshold
    moving_confidence: float = 0.0

    def to_dict(self) -> dict:
        return {
            'type': self.type.value,
            'confidence': round(self.confidence, 3),
            'moving_confidence': round(self.moving_confidence, 3),
            'is_moving': self.is_moving,
            'evaluated_at': self.evaluated_at.isoformat(),
        }


class MotionWindow:
    def __init__(self, capacity: int = 20):
        self._samples: Deque[Tuple[float, float]] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen

    def push(self, magnitude: float, at: float):
        self._samples.append((magnitude, at))

    def magnitudes(self) -> List[float]:
        return [m for m, _ in self._samples]

    def clear(self):
        self._samples.clear()

    def __len__(self):
        return len(self._samples)


class MotionClassifier:
    MOVING_CONFIDENCE = 0.6
    WALKING_VARIATION = 0.7

    def __init__(self, accelerometer=None, threshold: float = 1.2, interval: float = 1.0,
                 window_size: int = 20, error_threshold: int = 3, error_window: float = 10.0,
                 clock: Callable[[], datetime] = datetime.now,
                 monotonic: Callable[[], float] = time.monotonic):
        self.accelerometer = accelerometer
        self.threshold = threshold
        self.interval = interval
        self.error_threshold = error_threshold
        self.error_window = error_window
        self.window = MotionWindow(window_size)
        self._clock = clock
        self._monotonic = monotonic

        self.is_supported = accelerometer is not None
        self.is_disabled = False
        self.is_running = False
        self.last_error: Optional[str] = None
        self.latest: Optional[MotionClassification] = None

        self._latest_vector: Optional[Tuple[float, float, float]] = None
        self._vector_lock = threading.Lock()
        self._errors: Deque[float] = deque()
        self._unsubscribe: Optional[Callable] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self._callbacks: Dict[str, List[Callable]] = {
            'on_classification': [],
            'on_breaker_tripped': [],
        }

    @classmethod
    def from_config(cls, config, accelerometer=None, **kwargs) -> 'MotionClassifier':
        return cls(accelerometer=accelerometer, threshold=config.motion_threshold,
                   interval=config.motion_interval_sec, window_size=config.motion_window_size,
                   error_threshold=config.motion_error_threshold,
                   error_window=config.motion_error_window_sec, **kwargs)

    def register_callback(self, event: str, callback: Callable):
        if event in self._callbacks:
            self._callbacks[event].append(callback)

    def _emit(self, event: str, data):
        for callback in self._callbacks.get(event, []):
            try:
                callback(data)
            except Exception as e:
                logger.error("Callback error for %s: %s", event, e)

    def start(self) -> bool:
        if self.is_running or self.is_disabled:
            return False

        if self.accelerometer is not None:
            try:
                self._unsubscribe = self.accelerometer.subscribe(self.on_acceleration)
            except Unsupported:
                logger.info("Accelerometer not supported, classifier reports unknown")
                self.is_supported = False

        self._stop_event.clear()
        self.is_running = True
        self._thread = threading.Thread(target=self._run_ticks, name='motion-classifier', daemon=True)
        self._thread.start()
        return True

    def stop(self):
        self._stop_event.set()
        self.is_running = False
        self._release_listener()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None

    def on_acceleration(self, x, y, z):
        with self._vector_lock:
            self._latest_vector = (x, y, z)

    def _run_ticks(self):
        while not self._stop_event.wait(self.interval):
            if self.is_disabled:
                break
            self.tick()

    def tick(self) -> MotionClassification:
        if self.is_disabled or not self.is_supported:
            return self._publish(self._unknown())

        with self._vector_lock:
            vector = self._latest_vector

        try:
            if vector is not None:
                x, y, z = vector
                if all(math.isfinite(v) for v in (x, y, z)):
                    self.window.push(math.sqrt(x * x + y * y + z * z), self._monotonic())
            result = self.classify()
        except Exception as e:
            self._record_error(e)
            result = self._unknown()

        return self._publish(result)

    def classify(self) -> MotionClassification:
        now = self._clock()
        if self.is_disabled or not self.is_supported or len(self.window) == 0:
            return self._unknown()

        magnitudes = self.window.magnitudes()
        above = sum(1 for m in magnitudes if m > self.threshold)
        confidence = above / len(magnitudes)
        is_moving = confidence > self.MOVING_CONFIDENCE

        if not is_moving:
            return MotionClassification(MovementType.STATIONARY, 1.0 - confidence, now, False, confidence)

        mean = statistics.fmean(magnitudes)
        variation = statistics.pstdev(magnitudes) / mean if mean > 0 else 0.0
        movement = MovementType.WALKING if variation > self.WALKING_VARIATION else MovementType.VEHICLE
        return MotionClassification(movement, confidence, now, True, confidence)

    def get_status(self) -> dict:
        return {
            'is_running': self.is_running,
            'is_supported': self.is_supported,
            'is_disabled': self.is_disabled,
            'window_size': len(self.window),
            'last_error': self.last_error,
            'latest': self.latest.to_dict() if self.latest else None,
        }

    def _unknown(self) -> MotionClassification:
        return MotionClassification(MovementType.UNKNOWN, 0.0, self._clock(), False)

    def _publish(self, result: MotionClassification) -> MotionClassification:
        self.latest = result
        self._emit('on_classification', result)
        return result

    def _record_error(self, error: Exception):
        now = self._monotonic()
        self.last_error = str(error)
        self._errors.append(now)
        while self._errors and now - self._errors[0] > self.error_window:
            self._errors.popleft()

        logger.warning("Motion processing error (%d in window): %s", len(self._errors), error)

        if len(self._errors) > self.error_threshold:
            self._trip()

    def _trip(self):
        if self.is_disabled:
            return
        self.is_disabled = True
        self.is_supported = False
        self._stop_event.set()
        self.is_running = False
        self._release_listener()
        self.window.clear()
        logger.error("Motion classifier disabled after repeated errors")
        self._emit('on_breaker_tripped',
                   CircuitBreakerTripped(f"Motion classifier disabled: {self.last_error}"))

    def _release_listener(self):
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            try:
                unsubscribe()
            except Exception as e:
                logger.warning("Failed to release accelerometer listener: %s", e)
