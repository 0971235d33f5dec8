"""escrow-sync: client-side view and action reconciliation for milestone escrows."""

__version__ = "0.4.0"

__all__ = ["__version__"]
