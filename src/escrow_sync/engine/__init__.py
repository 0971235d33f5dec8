"""Reconciliation engine and per-session state."""

from .reconcile import ActionOutcome, CREATE_ESCROW, ReconciliationEngine, RefreshResult
from .session import SessionState

__all__ = ["ActionOutcome", "CREATE_ESCROW", "ReconciliationEngine", "RefreshResult", "SessionState"]
