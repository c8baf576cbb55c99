"""
Custom exception hierarchy for Drive Analytics.

All custom exceptions inherit from DriveAnalyticsError for easy catching.
"""


class DriveAnalyticsError(Exception):
    """Base exception for all Drive Analytics errors."""
    pass


class ConfigurationError(DriveAnalyticsError):
    """Configuration-related errors.

    Raised when configuration loading or validation fails.

    Example:
        >>> raise ConfigurationError("Invalid config: missing 'telemetry_base_url'")
    """
    pass


class DataValidationError(DriveAnalyticsError):
    """Data validation errors.

    Raised when input data fails validation checks.

    Attributes:
        invalid_rows: Number of rows that failed validation
        details: Dictionary with validation error details
    """

    def __init__(self, message: str, invalid_rows: int = 0, details: dict = None):
        super().__init__(message)
        self.invalid_rows = invalid_rows
        self.details = details or {}

    def __str__(self):
        base = super().__str__()
        if self.invalid_rows > 0:
            return f"{base} (invalid_rows={self.invalid_rows})"
        return base


class RemoteApiError(DriveAnalyticsError):
    """Errors returned by (or while talking to) a remote service.

    Attributes:
        status: HTTP status code, if a response was received
        endpoint: Endpoint path that failed
    """

    def __init__(self, message: str, status: int = None, endpoint: str = None):
        super().__init__(message)
        self.status = status
        self.endpoint = endpoint

    def __str__(self):
        base = super().__str__()
        if self.status is not None:
            return f"{base} (status={self.status})"
        return base


class NetworkError(RemoteApiError):
    """No response from the server (connection refused, DNS, reset)."""
    pass


class AuthenticationError(RemoteApiError):
    """Session expired or access denied (HTTP 401/403)."""
    pass


class RemoteTimeoutError(RemoteApiError):
    """A remote call exceeded its timeout.

    Kept distinct from cancellation and from generic network failures so that
    long-running operations can be reported with a clearer message.
    """
    pass


class OperationCancelled(DriveAnalyticsError):
    """Raised inside an operation whose cancellation token was cancelled.

    Never surfaced to callers: the owning operation swallows it and returns
    ``None``.
    """
    pass


class FetchError(DriveAnalyticsError):
    """A paginated fetch failed before any usable sample was collected.

    Attributes:
        fetch_key: Canonical key of the failed fetch
        page: Page number that failed
    """

    def __init__(self, message: str, fetch_key: str = None, page: int = None):
        super().__init__(message)
        self.fetch_key = fetch_key
        self.page = page

    def __str__(self):
        base = super().__str__()
        if self.page is not None:
            return f"{base} (page={self.page})"
        return base


class NeighborResolutionError(DriveAnalyticsError):
    """Every session of a neighbor resolution failed.

    Attributes:
        failed_sessions: Mapping of session id to the error message
    """

    def __init__(self, message: str, failed_sessions: dict = None):
        super().__init__(message)
        self.failed_sessions = failed_sessions or {}
