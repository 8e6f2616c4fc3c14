"""Shared exception types for core trading logic."""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Failure classes reported at the exchange boundary"""
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_ORDER = "invalid_order"
    UNKNOWN = "unknown"


class ExchangeError(RuntimeError):
    """Raised by Exchange adapters; every venue failure maps to one ErrorKind."""

    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, original: Optional[Exception] = None,
                 kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.original = original
        if kind is not None:
            self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.NETWORK, ErrorKind.RATE_LIMITED)


class NetworkError(ExchangeError):
    kind = ErrorKind.NETWORK


class RateLimited(ExchangeError):
    kind = ErrorKind.RATE_LIMITED


class InsufficientFunds(ExchangeError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class InvalidOrder(ExchangeError):
    kind = ErrorKind.INVALID_ORDER


class StreamError(RuntimeError):
    """Price stream gave up reconnecting."""


class StateLoadError(RuntimeError):
    """Persisted trading state exists but cannot be read."""

    def __init__(self, path: str, original: Optional[Exception] = None):
        super().__init__(f"Failed to load trading state from {path}: {original}")
        self.path = path
        self.original = original


class PositionConflictError(RuntimeError):
    """A second position was about to be installed while one is held."""


class DuplicateSignalError(RuntimeError):
    """Too many resting entry orders already exist on the signal's side."""

    def __init__(self, symbol: str, side: str, resting: int):
        super().__init__(
            f"{resting} resting LIMIT {side} orders already open for {symbol}; signal rejected"
        )
        self.symbol = symbol
        self.side = side
        self.resting = resting
