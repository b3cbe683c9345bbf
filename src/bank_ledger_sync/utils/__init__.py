"""Utility modules."""

from .exceptions import (
    SyncError,
    ConfigurationError,
    UnknownIdentityStrategy,
    SourceError,
    LedgerError,
)
from .logging_config import setup_logging

__all__ = [
    "SyncError",
    "ConfigurationError",
    "UnknownIdentityStrategy",
    "SourceError",
    "LedgerError",
    "setup_logging",
]
