"""Planning and applying ledger writes, plus the last-import state."""

from .planner import ReconciliationPlanner
from .executor import LedgerSyncExecutor

__all__ = ["ReconciliationPlanner", "LedgerSyncExecutor"]
