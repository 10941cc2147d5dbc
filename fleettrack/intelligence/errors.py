"""Tracking error taxonomy"""


class TrackingError(Exception):
    pass


class PermissionDenied(TrackingError):
    """Location permission refused. Terminal until permission is granted again."""


class PositionUnavailable(TrackingError):
    """Every location source in the fallback chain failed."""


class PositionTimeout(TrackingError):
    pass


class Unsupported(TrackingError):
    """The device has no sensor of the requested kind."""


class NetworkFailure(TrackingError):
    pass


class CircuitBreakerTripped(TrackingError):
    pass


class TripOperationError(TrackingError):
    """A trip start/end was rejected, either locally or by the server."""

    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code
