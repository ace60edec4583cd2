from __future__ import annotations

from collections.abc import Sequence


class ProviderError(Exception):
    """Base class for every error raised by the provider."""


class ConfigError(ProviderError):
    """Raised when the process configuration is invalid."""


class ValidationError(ProviderError):
    """Container labels are malformed or incomplete.

    All problems found in one label set are reported together so a single
    log line tells the operator everything that needs fixing.
    """

    def __init__(self, container: str, problems: Sequence[str]) -> None:
        self.container = container
        self.problems = tuple(problems)
        super().__init__(f"container {container}: " + "; ".join(self.problems))


class ResolutionError(ProviderError):
    """The upstream endpoint of a container could not be determined."""


class NetworkNotFoundError(ResolutionError):
    pass


class AmbiguousNetworkError(ResolutionError):
    pass


class AmbiguousPortError(ResolutionError):
    pass


class APIError(ProviderError):
    """A control-plane call failed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class TransientAPIError(APIError):
    """Network failure or 5xx/429 response; worth retrying."""


class TerminalAPIError(APIError):
    """4xx response; retrying the same request cannot succeed."""


class PublishCancelledError(ProviderError):
    """A publish was abandoned because shutdown cancelled its retries."""


class EventStreamError(ProviderError):
    """The runtime event subscription failed or was interrupted."""


class RuntimeUnavailableError(ProviderError):
    """The container runtime could not be reached during startup."""


class ControlPlaneUnavailableError(ProviderError):
    """The Pingap admin API could not be reached during startup."""
