"""Shared exception types for the exit manager core."""

from typing import Optional


class ExitManagerError(RuntimeError):
    """Base class for all exit manager errors."""


class DataUnavailable(ExitManagerError):
    """Raised when market data cannot be fetched for an asset."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class DataError(ExitManagerError):
    """Raised when a snapshot or record holds impossible values."""

    def __init__(self, message: str, account: Optional[str] = None, asset: Optional[str] = None):
        super().__init__(message)
        self.account = account
        self.asset = asset


class DuplicatePosition(ExitManagerError):
    """Raised when opening a position for a key that already has a live record."""

    def __init__(self, account: str, asset: str):
        super().__init__(f"Position already open for {account}/{asset}")
        self.account = account
        self.asset = asset


class UnknownPosition(ExitManagerError):
    """Raised when a ledger operation targets a key with no record."""

    def __init__(self, account: str, asset: str):
        super().__init__(f"No open position for {account}/{asset}")
        self.account = account
        self.asset = asset


class ExecutionFailure(ExitManagerError):
    """Raised when the trade executor declines or errors."""

    def __init__(self, message: str, original: Optional[Exception] = None):
        super().__init__(message)
        self.original = original


class ConfigInvalid(ExitManagerError):
    """Raised at load time when configuration fails validation."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__(f"Invalid configuration: {len(self.errors)} error(s) found")


class TokenRejected(ExitManagerError):
    """Raised when a token fails entry validation; nothing was bought."""


class StateWriteFailure(ExitManagerError):
    """Raised when the ledger state file could not be written. The in-memory change stands."""
