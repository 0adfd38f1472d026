"""Exception hierarchy raised by the deviation sentinel."""

from __future__ import annotations

from typing import Optional


class SentinelError(Exception):
    """Base class for every error surfaced by the sentinel."""


class ConfigurationError(SentinelError):
    """Rejected administrative input."""


class ZeroAddress(ConfigurationError):
    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"{field} must not be the zero address")


class InvalidDeviation(ConfigurationError):
    def __init__(self, deviation: int) -> None:
        self.deviation = deviation
        super().__init__(f"Deviation threshold must be an integer of at least 1, got {deviation!r}")


class ExceedsMaxDeviation(ConfigurationError):
    def __init__(self, deviation: int, maximum: int) -> None:
        self.deviation = deviation
        self.maximum = maximum
        super().__init__(f"Deviation threshold {deviation} exceeds maximum {maximum}")


class AuthorizationError(SentinelError):
    """Caller is not permitted to perform the operation."""


class UnauthorizedKeeper(AuthorizationError):
    def __init__(self, caller: str) -> None:
        self.caller = caller
        super().__init__(f"{caller} is not a trusted keeper")


class Unauthorized(AuthorizationError):
    def __init__(self, caller: str, operation: str) -> None:
        self.caller = caller
        self.operation = operation
        super().__init__(f"{caller} is not allowed to call {operation}")


class PreconditionError(SentinelError):
    """Market or token is not in a state that allows enforcement."""


class NotConfigured(PreconditionError):
    def __init__(self, token: str) -> None:
        self.token = token
        super().__init__(f"No deviation threshold configured for token {token}")


class MonitoringDisabled(PreconditionError):
    def __init__(self, token: str) -> None:
        self.token = token
        super().__init__(f"Monitoring is disabled for token {token}")


class DownstreamError(SentinelError):
    """A collaborator failed while serving the sentinel."""


class RiskEngineRejected(DownstreamError):
    """The risk engine refused a collateral factor or pause update."""

    def __init__(self, operation: str, code: Optional[int] = None, *, detail: Optional[str] = None) -> None:
        self.operation = operation
        self.code = code
        message = f"Risk engine rejected {operation}"
        if code is not None:
            message += f" with code {code}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class PriceFeedUnavailable(DownstreamError):
    def __init__(self, feed: str, token: str, detail: Optional[str] = None) -> None:
        self.feed = feed
        self.token = token
        message = f"Price feed {feed} unavailable for token {token}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class TokenNotConfigured(DownstreamError):
    def __init__(self, token: str) -> None:
        self.token = token
        super().__init__(f"No oracle routed for token {token}")


__all__ = [
    "SentinelError",
    "ConfigurationError",
    "ZeroAddress",
    "InvalidDeviation",
    "ExceedsMaxDeviation",
    "AuthorizationError",
    "UnauthorizedKeeper",
    "Unauthorized",
    "PreconditionError",
    "NotConfigured",
    "MonitoringDisabled",
    "DownstreamError",
    "RiskEngineRejected",
    "PriceFeedUnavailable",
    "TokenNotConfigured",
]
