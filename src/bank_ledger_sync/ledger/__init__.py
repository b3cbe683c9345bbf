"""Ledger API collaborator and account mapping."""

from .client import LedgerClient
from .accounts import AccountDirectory

__all__ = ["LedgerClient", "AccountDirectory"]
