from __future__ import annotations


class FleetError(Exception):
    """Base class for scheduler errors."""


class ProviderError(FleetError):
    """The provisioning service rejected a request or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None, code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class ProvisioningError(FleetError):
    """An environment start did not yield a usable debug endpoint."""


class RoutineLoadError(FleetError):
    """A routine reference could not be resolved to a callable."""


class QueueBuildError(FleetError, ValueError):
    """The task queue cannot be built from the supplied inputs."""


__all__ = [
    "FleetError",
    "ProviderError",
    "ProvisioningError",
    "QueueBuildError",
    "RoutineLoadError",
]
