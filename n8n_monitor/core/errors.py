class MonitorError(Exception):
    """Base class for errors raised by the monitoring core."""


class UpstreamError(MonitorError):
    """The remote instance API was unreachable or answered non-2xx."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ValidationError(MonitorError):
    pass


class NotFoundError(MonitorError):
    pass


class TransportGoneError(MonitorError):
    """A push endpoint is permanently gone and must not be used again."""

    def __init__(self, endpoint: str, status_code: int | None = None):
        super().__init__(f"Push endpoint gone: {endpoint}")
        self.endpoint = endpoint
        self.status_code = status_code
