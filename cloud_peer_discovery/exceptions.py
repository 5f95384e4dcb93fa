"""Custom exception hierarchy for cloud peer discovery."""


class DiscoveryError(Exception):
    """Base exception for all discovery errors."""


class ConfigError(DiscoveryError):
    """Invalid or missing configuration."""


class UnsupportedAction(DiscoveryError):
    """The inventory query names an action the fetcher does not implement."""


class FetchError(DiscoveryError):
    """Error talking to the cloud inventory API."""


class TransientFetchError(FetchError):
    """A failure worth retrying: connection refused, timeout, 5xx, throttling."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FetchRejected(FetchError):
    """HTTP 4xx: the API refused the request (credentials, parameters). Never retried."""

    def __init__(self, message: str, status_code: int | None = None, response_body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class FetchExhausted(FetchError):
    """Every attempt failed with a transient error."""

    def __init__(self, message: str, attempts: int, last_error: BaseException | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class MalformedResponse(DiscoveryError):
    """The response envelope could not be interpreted."""


class RefreshTimeout(DiscoveryError):
    """A discovery cycle ran past its deadline."""


class RefreshCancelled(DiscoveryError):
    """A discovery cycle was abandoned: the coordinator is stopping or the fetch was called off."""
