"""
Error taxonomy for the execution core.

Only the retry layers catch TransientNetworkError; everything else either
propagates to the caller or is caught at the boundary of the unit of work
(one exchange, one symbol, one position) and logged.
"""
from __future__ import annotations

from typing import Optional


class TradingError(Exception):
    """Base class for all execution-core errors."""


class TransientNetworkError(TradingError):
    """Timeout, connection failure, HTTP 5xx/429 or an empty body. Retryable."""

    def __init__(self, message: str, exchange: Optional[str] = None):
        super().__init__(message)
        self.exchange = exchange


class AuthenticationError(TradingError):
    """Rejected credentials or signature. Never retried."""


class ValidationError(TradingError):
    """Request rejected by the venue or by local input checks. Never retried."""


class MalformedResponseError(TradingError):
    """A successful response that could not be parsed. Protocol mismatch, not transience."""


class InsufficientDataError(TradingError):
    """Not enough samples to compute a statistic; callers fall back to a default."""


class OrderPlacementError(TradingError):
    """Terminal failure to place an order; the order must be assumed not placed."""

    def __init__(self, message: str, attempts: int = 0,
                 last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class PositionNotFoundError(TradingError):
    """No position with the requested id."""


class ExchangeMismatchError(TradingError):
    """Position belongs to a different exchange than the one requested."""
