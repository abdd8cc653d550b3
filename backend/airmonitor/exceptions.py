"""Error taxonomy shared by the fetcher, the local store and the coordinator."""
from typing import Any, Optional


class AirMonitorError(Exception):
    """Base class for all airmonitor errors."""
    pass


class NetworkError(AirMonitorError):
    """Upstream unreachable, timed out or answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ParseError(AirMonitorError):
    """Payload is not valid JSON or does not have the expected shape."""
    pass


class NotFound(AirMonitorError):
    """Nothing cached for the requested key."""
    pass


class StorageError(AirMonitorError):
    """Local store could not be read or written (permissions, disk full, timeout)."""
    pass


class Unavailable(AirMonitorError):
    """Neither the network nor the local store could satisfy the request."""

    def __init__(self, kind: str, key: Any = None, message: Optional[str] = None):
        self.kind = kind
        self.key = key
        if message is None:
            if key is None:
                message = f"No {kind} data available (offline and nothing cached)"
            else:
                message = f"No {kind} data available for {key} (offline and nothing cached)"
        super().__init__(message)
