"""
Route Post-Processor
Batch pass over a recorded trip route:
- GPS noise filtering (accuracy, sampling gap, implied speed and acceleration)
- Trip distance over the cleaned route
- Dwell ("stop") point detection with a confidence score
- Completion status against the start / target end point
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from .geometry import (check_coordinate, haversine_km, haversine_m, elapsed_seconds, implied_speed_kmh,
                       implied_acceleration_ms2, centroid)

MAX_SPEED_KMH = 180.0
MAX_ACCELERATION_MS2 = 5.0
MIN_ACCURACY_M = 100.0
MIN_SAMPLE_GAP_SEC = 1.0

STOP_MIN_DURATION_MS = 3 * 60 * 1000
STOP_MAX_RADIUS_M = 50.0
STOP_MIN_CONFIDENCE = 0.6
STOP_FULL_DURATION_MS = 10 * 60 * 1000

COMPLETION_RADIUS_KM = 0.1


@dataclass
class RoutePoint:
    latitude: float
    longitude: float
    captured_at: datetime
    accuracy_m: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'captured_at': self.captured_at.isoformat(),
            'accuracy': self.accuracy_m,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'RoutePoint':
        captured = data.get('captured_at') or data.get('timestamp')
        if isinstance(captured, (int, float)):
            captured = datetime.fromtimestamp(captured / 1000, tz=timezone.utc)
        elif isinstance(captured, str):
            captured = datetime.fromisoformat(captured.replace('Z', '+00:00'))
        if captured is None:
            raise ValueError("route point is missing a timestamp")
        if not isinstance(captured, datetime):
            raise TypeError(f"unsupported timestamp {captured!r}")
        # naive values are taken as UTC
        if captured.tzinfo is None:
            captured = captured.replace(tzinfo=timezone.utc)
        else:
            captured = captured.astimezone(timezone.utc)

        latitude, longitude = float(data['latitude']), float(data['longitude'])
        check_coordinate(latitude, longitude)
        accuracy = data.get('accuracy')
        return cls(
            latitude=latitude,
            longitude=longitude,
            captured_at=captured,
            accuracy_m=float(accuracy) if accuracy is not None else None,
        )


@dataclass
class StopPoint:
    latitude: float
    longitude: float
    started_at: datetime
    ended_at: datetime
    duration_ms: float
    confidence: float

    def to_dict(self) -> dict:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'started_at': self.started_at.isoformat(),
            'ended_at': self.ended_at.isoformat(),
            'duration_ms': self.duration_ms,
            'confidence': round(self.confidence, 3),
        }


@dataclass
class RouteSummary:
    points: List[RoutePoint] = field(default_factory=list)
    total_points: int = 0
    raw_distance_km: float = 0.0
    distance_km: float = 0.0
    stops: List[StopPoint] = field(default_factory=list)
    completion_status: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'total_points': self.total_points,
            'filtered_points': len(self.points),
            'raw_distance_km': round(self.raw_distance_km, 3),
            'distance_km': round(self.distance_km, 3),
            'stops': [s.to_dict() for s in self.stops],
            'completion_status': self.completion_status,
        }


def _sorted(points: Sequence[RoutePoint]) -> List[RoutePoint]:
    return sorted(points, key=lambda p: p.captured_at)


def haversine_distance_km(a: RoutePoint, b: RoutePoint) -> float:
    return haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)


def _segment_speed(a: RoutePoint, b: RoutePoint) -> Optional[float]:
    return implied_speed_kmh(haversine_distance_km(a, b), elapsed_seconds(a.captured_at, b.captured_at))


def filter_anomalous_points(points: Sequence[RoutePoint], max_speed_kmh: float = MAX_SPEED_KMH,
                            max_accel_ms2: float = MAX_ACCELERATION_MS2,
                            min_accuracy_m: float = MIN_ACCURACY_M) -> List[RoutePoint]:
    """Drop GPS jumps from a route. The earliest point is always kept.

    A later point is dropped when its reported accuracy is worse than
    ``min_accuracy_m``, when it arrives less than a second after the last kept
    point, when reaching it implies a speed above ``max_speed_kmh``, or (once
    two points are kept) when the change of speed implies an acceleration above
    ``max_accel_ms2``.
    """
    ordered = _sorted(points)
    if not ordered:
        return []

    kept = [ordered[0]]

    for point in ordered[1:]:
        if point.accuracy_m and point.accuracy_m > min_accuracy_m:
            continue

        last = kept[-1]
        seconds = elapsed_seconds(last.captured_at, point.captured_at)
        if seconds < MIN_SAMPLE_GAP_SEC:
            continue

        speed = implied_speed_kmh(haversine_distance_km(last, point), seconds)
        if speed > max_speed_kmh:
            continue

        if len(kept) >= 2:
            prev_speed = _segment_speed(kept[-2], last)
            if prev_speed is not None:
                accel = implied_acceleration_ms2(prev_speed, speed, seconds)
                if abs(accel) > max_accel_ms2:
                    continue

        kept.append(point)

    return kept


def compute_trip_distance(points: Sequence[RoutePoint], filter_first: bool = True) -> float:
    route = filter_anomalous_points(points) if filter_first else _sorted(points)
    if len(route) < 2:
        return 0.0

    total = 0.0
    for a, b in zip(route, route[1:]):
        total += haversine_distance_km(a, b)
    return total


def _stop_confidence(count: int, duration_ms: float) -> float:
    if duration_ms <= 0:
        return 0.0
    points_per_minute = count / (duration_ms / 60000)
    duration_factor = min(1.0, duration_ms / STOP_FULL_DURATION_MS)
    return min(1.0, points_per_minute * 0.3 + duration_factor * 0.7)


def _close_cluster(cluster: List[RoutePoint], min_duration_ms: float,
                   min_confidence: float) -> Optional[StopPoint]:
    started_at = cluster[0].captured_at
    ended_at = cluster[-1].captured_at
    duration_ms = elapsed_seconds(started_at, ended_at) * 1000

    if duration_ms < min_duration_ms:
        return None

    confidence = _stop_confidence(len(cluster), duration_ms)
    if confidence < min_confidence:
        return None

    lat, lon = centroid((p.latitude, p.longitude) for p in cluster)
    return StopPoint(
        latitude=lat,
        longitude=lon,
        started_at=started_at,
        ended_at=ended_at,
        duration_ms=duration_ms,
        confidence=confidence,
    )


def detect_stop_points(points: Sequence[RoutePoint], min_duration_ms: float = STOP_MIN_DURATION_MS,
                       max_radius_m: float = STOP_MAX_RADIUS_M,
                       min_confidence: float = STOP_MIN_CONFIDENCE) -> List[StopPoint]:
    """Greedy single-pass clustering around each cluster's first point."""
    if len(points) < 3:
        return []

    ordered = _sorted(points)
    stops: List[StopPoint] = []
    cluster = [ordered[0]]

    for point in ordered[1:]:
        anchor = cluster[0]
        if haversine_m(anchor.latitude, anchor.longitude, point.latitude, point.longitude) <= max_radius_m:
            cluster.append(point)
            continue

        stop = _close_cluster(cluster, min_duration_ms, min_confidence)
        if stop:
            stops.append(stop)
        cluster = [point]

    if len(cluster) > 1:
        stop = _close_cluster(cluster, min_duration_ms, min_confidence)
        if stop:
            stops.append(stop)

    return stops


def completion_status(end: Tuple[float, float], start: Optional[Tuple[float, float]] = None,
                      target_end: Optional[Tuple[float, float]] = None,
                      radius_km: float = COMPLETION_RADIUS_KM) -> str:
    near_start = start is not None and haversine_km(start[0], start[1], end[0], end[1]) < radius_km
    near_target = (target_end is not None and
                   haversine_km(target_end[0], target_end[1], end[0], end[1]) < radius_km)
    return 'COMPLETED' if near_start or near_target else 'INCOMPLETE'


def summarize_route(points: Sequence[RoutePoint], start: Optional[Tuple[float, float]] = None,
                    target_end: Optional[Tuple[float, float]] = None) -> RouteSummary:
    ordered = _sorted(points)
    kept = filter_anomalous_points(ordered)
    summary = RouteSummary(
        points=kept,
        total_points=len(ordered),
        raw_distance_km=compute_trip_distance(ordered, filter_first=False),
        distance_km=compute_trip_distance(kept, filter_first=False),
        stops=detect_stop_points(ordered),
    )
    if ordered and (start is not None or target_end is not None):
        last = ordered[-1]
        summary.completion_status = completion_status((last.latitude, last.longitude), start, target_end)
    return summary
