"""Request shape validation; everything here runs before any network call."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from ..errors import ValidationError
from ..models import canonical_address, ether_to_wei, wei_to_ether

_UINT64_MAX = 2**64 - 1


@dataclass(frozen=True)
class CreateEscrowRequest:
    client: str
    provider: str
    amounts_wei: tuple[int, ...]
    deadlines: tuple[int, ...]

    @property
    def total_wei(self) -> int:
        return sum(self.amounts_wei)

    @property
    def total_ether(self) -> Decimal:
        return wei_to_ether(self.total_wei)

    def call_args(self) -> tuple:
        return (self.client, self.provider, list(self.amounts_wei), list(self.deadlines))


def _as_list(value: Any, name: str) -> list:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return list(value)
    raise ValidationError(f"{name} must be a list or comma-separated string")


def _deadline(value: Any, position: int) -> int:
    try:
        deadline = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Milestone {position} deadline must be unix seconds, got {value!r}")
    if isinstance(value, float) and value != deadline:
        raise ValidationError(f"Milestone {position} deadline must be whole seconds, got {value!r}")
    if deadline < 0 or deadline > _UINT64_MAX:
        raise ValidationError(f"Milestone {position} deadline out of range")
    return deadline


def validate_create_escrow(client: Any, provider: Any, amounts: Any, deadlines: Any) -> CreateEscrowRequest:
    client_addr = canonical_address(client)
    provider_addr = canonical_address(provider)

    amount_items = _as_list(amounts, "amounts")
    deadline_items = _as_list(deadlines, "deadlines")
    if not amount_items or not deadline_items:
        raise ValidationError("amounts and deadlines must be non-empty")
    if len(amount_items) != len(deadline_items):
        raise ValidationError(
            f"You have {len(amount_items)} amount(s) and {len(deadline_items)} deadline(s); they must match"
        )

    amounts_wei = []
    for position, raw in enumerate(amount_items, start=1):
        wei = ether_to_wei(raw)
        if wei <= 0:
            raise ValidationError(f"Milestone {position} amount must be > 0")
        amounts_wei.append(wei)

    parsed_deadlines = tuple(_deadline(raw, position) for position, raw in enumerate(deadline_items, start=1))

    return CreateEscrowRequest(
        client=client_addr,
        provider=provider_addr,
        amounts_wei=tuple(amounts_wei),
        deadlines=parsed_deadlines,
    )


def validate_milestone_index(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("milestone index must be an integer")
    try:
        index = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"milestone index must be an integer, got {value!r}")
    if index < 0:
        raise ValidationError("milestone index must be >= 0")
    return index
