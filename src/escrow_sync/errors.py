"""Error taxonomy for escrow synchronization.

Every error carries a human-readable ``message`` and an optional ``cause`` and
maps to one HTTP status so the API layer can render it uniformly.
"""

from __future__ import annotations

from typing import Any


class EscrowSyncError(Exception):
    status_code = 500

    def __init__(self, message: str, cause: Any = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "cause": str(self.cause) if self.cause is not None else None,
            "name": type(self).__name__,
        }


# --- validation class (rejected before any network call) ---

class ValidationError(EscrowSyncError):
    status_code = 400


class InvalidAddress(ValidationError):
    pass


class GuardViolation(EscrowSyncError):
    """Local state-machine precondition unmet; nothing was dispatched."""

    status_code = 409

    def __init__(self, action: str, message: str, cause: Any = None):
        super().__init__(message, cause)
        self.action = action


InvalidTransition = GuardViolation


class ActionInProgress(EscrowSyncError):
    status_code = 409


# --- execution class ---

class TransportError(EscrowSyncError):
    status_code = 503


class LedgerUnavailable(TransportError):
    pass


class GatewayUnavailable(TransportError):
    pass


class InsufficientAuthorization(EscrowSyncError):
    status_code = 403


class DispatchFailed(EscrowSyncError):
    status_code = 502


class ConfirmationTimeout(EscrowSyncError):
    status_code = 504


class SimulationFailed(EscrowSyncError):
    status_code = 422


REVERT_HINTS = {
    "fund": "Possible: ALREADY_FUNDED or BAD_VALUE.",
    "submit": (
        "Possible: NOT_FUNDED (fund first), PREV_NOT_PAID (complete prior milestone), "
        "BAD_STATUS (already submitted?), EMPTY_PROOF (add a proof reference), "
        "NOT_PROVIDER (escrow was created with a different provider address)."
    ),
    "approve": "Possible: NOT_SUBMITTED (provider must submit first).",
    "reject": "Possible: NOT_SUBMITTED.",
    "claim": "Possible: BAD_STATUS, NO_SUBMIT_TS, or DISPUTE_WINDOW not passed.",
}
DEFAULT_REVERT_HINT = "Inspect the transaction on a block explorer for the revert reason."


class TransactionReverted(EscrowSyncError):
    status_code = 422

    def __init__(self, action: str, tx_id: str, reason: str | None = None):
        self.action = action
        self.tx_id = tx_id
        self.reason = reason
        self.hint = REVERT_HINTS.get(action, DEFAULT_REVERT_HINT)
        super().__init__(f"Transaction reverted on-chain. {self.hint}", cause=reason)


class StaleDataWarning(UserWarning):
    """Refresh retry budget exhausted; the last good snapshot was retained."""

    def __init__(self, address: str | None, attempts: int, last_error: str):
        super().__init__(f"Refresh failed after {attempts} attempt(s): {last_error}")
        self.address = address
        self.attempts = attempts
        self.last_error = last_error
