"""Source acquisition and normalization."""

from .normalizer import TransactionNormalizer
from .acquisition import ExportDirectorySource, SourceClient

__all__ = ["TransactionNormalizer", "ExportDirectorySource", "SourceClient"]
