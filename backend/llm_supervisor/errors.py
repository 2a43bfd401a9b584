"""Error taxonomy for the llama-server supervisor."""


class SupervisorError(Exception):
    """Base exception for all supervisor errors."""


class ConfigurationError(SupervisorError):
    """Binary or model is missing, unreadable or not executable.

    Never retried and never spawns a process.
    """


class ProviderUnavailableError(ConfigurationError):
    """The local provider is disabled or its paths cannot be resolved."""


class StartupError(SupervisorError):
    """The server process failed to spawn, exited early, or never became ready."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        memory_related: bool = False,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.memory_related = memory_related


class SupervisorClosedError(SupervisorError):
    """Raised by waits and starts interrupted by cleanup()."""


class SupervisorBusyError(SupervisorError):
    """A supervisor is already being constructed."""


class HealthRestartFailure(SupervisorError):
    """A health-triggered restart failed. Logged and notified, never propagated."""


class RequestError(SupervisorError):
    """Base class for errors raised while talking to a running server."""


class RequestTimeoutError(RequestError):
    """The request exceeded its computed deadline. Not retried."""

    def __init__(self, message: str, timeout_seconds: float) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class NetworkError(RequestError):
    """Transport failure or unexpected HTTP status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ServiceUnavailableError(NetworkError):
    """The server answered 503."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=503)


class ParseError(RequestError):
    """The server response could not be interpreted."""
