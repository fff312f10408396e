"""
Gateway Exceptions

Failure taxonomy shared by every connector:

    GatewayError
    ├── TransportError            connection refused, timeout, TLS failure, 5xx
    │   └── MalformedResponseError  payload could not be parsed
    ├── ExchangeRejection         venue refused the request (bad symbol, balance, ...)
    ├── RateLimitExceeded         local request budget exhausted
    └── UnsupportedOperationError connector variant lacks the capability

Connectors raise these internally and translate them into the documented
failure values ("" / False / [] / None) plus an error callback at the public
operation boundary. The ingestion loop catches GatewayError per request and
keeps running.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway failures."""

    def __init__(self, message: str, context: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        if self.context:
            return f"{self.context}: {self.message}"
        return self.message


class TransportError(GatewayError):
    """Network-level failure or an unusable (5xx) response."""

    def __init__(self, message: str, context: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message, context)
        self.status = status


class MalformedResponseError(TransportError):
    """Response body could not be decoded or lacked required fields."""


class ExchangeRejection(GatewayError):
    """The exchange understood the request and refused it."""

    def __init__(
        self,
        message: str,
        context: Optional[str] = None,
        code: Optional[int] = None,
        status: Optional[int] = None
    ) -> None:
        super().__init__(message, context)
        self.code = code
        self.status = status


class RateLimitExceeded(GatewayError):
    """Local request budget for the current window is exhausted."""


class UnsupportedOperationError(GatewayError, NotImplementedError):
    """Operation is not available on this connector variant."""
