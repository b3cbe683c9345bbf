"""Custom exceptions for the ledger sync application."""

from typing import Any, Optional


class SyncError(Exception):
    """Base exception for ledger sync errors."""

    pass


class ConfigurationError(SyncError):
    """Error in configuration."""

    pass


class UnknownIdentityStrategy(SyncError):
    """The configured external id strategy is not registered."""

    def __init__(self, strategy: str):
        super().__init__(f"Unknown identity strategy: {strategy!r}")
        self.strategy = strategy


class SourceError(SyncError):
    """Error acquiring transactions from a source."""

    pass


class LedgerError(SyncError):
    """Error talking to the ledger API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        return f"{base} (status {self.status_code})"
