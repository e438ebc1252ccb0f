"""Exception hierarchy shared by the relay locator services."""


class RelayServiceError(Exception):
    """Base exception for relay locator service errors."""

    pass


class DataUnavailable(RelayServiceError):
    """Exception raised when the location store cannot be read or written."""

    pass


class InvalidCoordinate(RelayServiceError, ValueError):
    """Exception raised for a latitude/longitude pair that is not finite or out of range."""

    pass


class ProbeFailure(RelayServiceError):
    """A single connection attempt failed. Never escapes ReachabilityProbe.probe."""

    def __init__(self, host: str, port: int, reason: str):
        super().__init__(f"{host}:{port} unreachable ({reason})")
        self.host = host
        self.port = port
        self.reason = reason


class UpstreamFeedError(RelayServiceError):
    """Exception raised when the upstream relay feed cannot be fetched or parsed."""

    pass
