"""Milestone state machine mirrored from the escrow contract.

The contract is the authority. This table only exists so obviously doomed
actions are refused before they reach the gateway, and so a confirmed action
can be projected onto the cached snapshot until the next authoritative read.
"""

from __future__ import annotations

from dataclasses import replace
from enum import Enum

from ..errors import GuardViolation, ValidationError
from ..models import EscrowSnapshot, MilestoneStatus

S = MilestoneStatus

ALLOWED_TRANSITIONS = {
    S.PENDING: {S.SUBMITTED},
    S.SUBMITTED: {S.APPROVED, S.REJECTED, S.PAID, S.CLAIMED},
    S.APPROVED: {S.PAID},
    S.REJECTED: {S.PENDING, S.SUBMITTED},
    S.PAID: set(),
    S.CLAIMED: set(),
}

TERMINAL_STATES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


class Action(str, Enum):
    FUND = "fund"
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    CLAIM = "claim"


ROLE_FOR_ACTION = {
    Action.FUND: "client",
    Action.SUBMIT: "provider",
    Action.APPROVE: "client",
    Action.REJECT: "client",
    Action.CLAIM: "provider",
}

# Status the contract leaves the milestone in once the action is mined.
# Approval and claim both release payment in the same transaction.
POST_STATUS = {
    Action.SUBMIT: S.SUBMITTED,
    Action.APPROVE: S.PAID,
    Action.REJECT: S.REJECTED,
    Action.CLAIM: S.PAID,
}

# Edge of the table each milestone action walks. Approval and claim settle
# past this edge in the same transaction (see POST_STATUS).
ACTION_EDGE = {
    Action.SUBMIT: S.SUBMITTED,
    Action.APPROVE: S.APPROVED,
    Action.REJECT: S.REJECTED,
    Action.CLAIM: S.CLAIMED,
}


def sources_of(target: MilestoneStatus) -> list[MilestoneStatus]:
    return sorted(s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets)


def parse_action(value: str | Action) -> Action:
    try:
        return Action(value)
    except ValueError:
        raise ValidationError(f"unknown action '{value}'")


def transition_allowed(from_state: MilestoneStatus, to_state: MilestoneStatus) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, set())


def check_guard(
    action: str | Action,
    snapshot: EscrowSnapshot,
    index: int | None = None,
    *,
    proof_uri: str | None = None,
    ledger_time: int | None = None,
) -> None:
    """Raise GuardViolation if ``action`` cannot succeed against ``snapshot``."""
    action = parse_action(action)

    if action is Action.FUND:
        if snapshot.funded:
            raise GuardViolation(action.value, "escrow is already funded")
        return

    if index is None:
        raise GuardViolation(action.value, f"{action.value} requires a milestone index")
    milestone = snapshot.milestone(index)
    status = milestone.status

    if status in TERMINAL_STATES:
        raise GuardViolation(action.value, f"milestone {index} is {status.label} and already settled")
    if not transition_allowed(status, ACTION_EDGE[action]):
        required = " or ".join(s.label for s in sources_of(ACTION_EDGE[action]))
        raise GuardViolation(action.value, f"milestone {index} is {status.label}; {action.value} requires {required}")

    if action is Action.SUBMIT:
        if not (proof_uri or "").strip():
            raise GuardViolation(action.value, "submit requires a non-empty proof reference")
        return

    if action is Action.CLAIM:
        if ledger_time is None:
            raise GuardViolation(action.value, "ledger time unknown; refresh before claiming")
        if ledger_time < milestone.deadline:
            raise GuardViolation(
                action.value,
                f"milestone {index} claimable in {milestone.deadline - ledger_time}s",
            )


def is_allowed(action: str | Action, snapshot: EscrowSnapshot | None, index: int | None = None, **kwargs) -> bool:
    if snapshot is None:
        return False
    try:
        check_guard(action, snapshot, index, **kwargs)
    except (GuardViolation, ValidationError):
        return False
    return True


def claim_ready_in(snapshot: EscrowSnapshot, index: int, ledger_time: int) -> int:
    """Seconds until the milestone becomes claimable; 0 once the deadline has passed."""
    return max(0, snapshot.milestone(index).deadline - ledger_time)


def project(
    action: str | Action,
    snapshot: EscrowSnapshot,
    index: int | None = None,
    *,
    proof_uri: str | None = None,
    reason_uri: str | None = None,
    now: int = 0,
) -> EscrowSnapshot:
    """Expected post-state of a confirmed action, for the optimistic cache."""
    action = parse_action(action)
    if action is Action.FUND:
        return replace(snapshot, funded=True)

    current = snapshot.milestone(index).status
    if not transition_allowed(current, ACTION_EDGE[action]):
        raise GuardViolation(action.value, f"cannot project {action.value} from {current.label}")

    changes: dict = {"status": POST_STATUS[action]}
    if action is Action.SUBMIT:
        changes["submitted_at"] = now
        if proof_uri is not None:
            changes["proof_uri"] = proof_uri
    elif action is Action.REJECT and reason_uri is not None:
        changes["reason_uri"] = reason_uri
    return snapshot.with_milestone(index, **changes)
