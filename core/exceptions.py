"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class ExchangeError(RuntimeError):
    """Raised when the exchange rejects a request or cannot be reached."""

    def __init__(self, operation: str, message: str, original: Optional[Exception] = None):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.original = original


class DecisionSourceError(RuntimeError):
    """Raised when the decision source cannot produce a response at all."""


class ExecutionError(RuntimeError):
    """Raised when an order sequence cannot complete."""


class BacktestNotFound(KeyError):
    """Raised when a backtest run id does not exist."""


class BacktestStateError(RuntimeError):
    """Raised when an operation is not valid for a run's current status."""


class SnapshotVersionError(ValueError):
    """Raised when a serialized simulation snapshot has an unknown version."""
