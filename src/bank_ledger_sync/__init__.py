"""Bank and credit card transaction sync into a personal finance ledger."""

__version__ = "1.0.0"
