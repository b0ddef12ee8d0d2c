"""Exception taxonomy shared by every webtask client component."""

from __future__ import annotations


class SandboxError(Exception):
    """Base class for webtask client failures."""


class ValidationError(SandboxError, ValueError):
    """Raised when caller input is rejected before any request is issued."""


class InvalidScheduleWindow(ValidationError):
    """Raised when a token's `exp` is not later than its `nbf`."""


class MissingRequiredOption(ValidationError):
    """Raised when a mandatory option (usually `name`) is absent."""

    def __init__(self, option: str) -> None:
        super().__init__(f"Missing required option: `{option}`")
        self.option = option


class MissingJobName(ValidationError):
    """Raised when a cron job name cannot be derived from a webtask."""


class UnremovableWebtask(ValidationError):
    """Raised when removal is requested for a webtask without a name."""


class UnsupportedLimitType(ValidationError):
    """Raised when a rate limit uses an unknown time unit."""


class UnsupportedLimitValue(ValidationError):
    """Raised when a rate limit value is not a positive integer."""


class InvalidTokenError(SandboxError, ValueError):
    """Raised when a token cannot be decoded or lacks required claims."""


class ContainerDerivationError(InvalidTokenError):
    """Raised when a regex `ten` claim cannot produce a container name."""

    def __init__(self, claim: str, cause: Exception) -> None:
        super().__init__(f"Unable to derive container name from `ten` claim `{claim}`: {cause}")
        self.claim = claim
        self.cause = cause


class TransportError(SandboxError):
    """Raised when the cluster cannot be reached or the connection fails."""


class ResponseError(SandboxError):
    """Raised when the cluster answers an administrative call with a non-success status."""

    def __init__(self, message: str, *, status_code: int, body: object = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class ClientError(ResponseError):
    """HTTP 4xx from the cluster."""


class ServerError(ResponseError):
    """HTTP 5xx from the cluster."""


class UnexpectedResponseType(ResponseError):
    """HTTP 3xx the transport did not resolve."""


class ProfileNotFoundError(SandboxError):
    """Raised when a named profile cannot be loaded from the profile file."""


__all__ = [
    "SandboxError",
    "ValidationError",
    "InvalidScheduleWindow",
    "MissingRequiredOption",
    "MissingJobName",
    "UnremovableWebtask",
    "UnsupportedLimitType",
    "UnsupportedLimitValue",
    "InvalidTokenError",
    "ContainerDerivationError",
    "TransportError",
    "ResponseError",
    "ClientError",
    "ServerError",
    "UnexpectedResponseType",
    "ProfileNotFoundError",
]
