"""Control-plane helpers: milestone state machine and request validation."""

from .transitions import (
    ALLOWED_TRANSITIONS,
    Action,
    ROLE_FOR_ACTION,
    check_guard,
    claim_ready_in,
    is_allowed,
    parse_action,
    project,
    transition_allowed,
)
from .validation import CreateEscrowRequest, validate_create_escrow, validate_milestone_index

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Action",
    "ROLE_FOR_ACTION",
    "check_guard",
    "claim_ready_in",
    "is_allowed",
    "parse_action",
    "project",
    "transition_allowed",
    "CreateEscrowRequest",
    "validate_create_escrow",
    "validate_milestone_index",
]
