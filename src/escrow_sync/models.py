"""Escrow domain records: addresses, milestones, snapshots, metadata."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum, IntEnum
import re
from typing import Any

from eth_utils import to_checksum_address

from .errors import InvalidAddress, ValidationError


_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
WEI_PER_ETHER = Decimal(10) ** 18


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value.strip()))


def canonical_address(value: Any) -> str:
    """Normalize an address to its checksummed form, the only form used internally."""
    if not is_address(value):
        raise InvalidAddress(f"invalid address: {value!r}")
    return to_checksum_address(value.strip().lower())


def wei_to_ether(wei: int) -> Decimal:
    return Decimal(int(wei)) / WEI_PER_ETHER


def ether_to_wei(amount: Any) -> int:
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"invalid ether amount: {amount!r}")
    if not value.is_finite():
        raise ValidationError(f"invalid ether amount: {amount!r}")
    wei = value * WEI_PER_ETHER
    if wei != wei.to_integral_value():
        raise ValidationError(f"ether amount has more than 18 decimals: {amount!r}")
    return int(wei)


class MilestoneStatus(IntEnum):
    PENDING = 0
    SUBMITTED = 1
    APPROVED = 2
    REJECTED = 3
    PAID = 4
    CLAIMED = 5

    @property
    def label(self) -> str:
        return self.name.capitalize()


def status_label(value: int) -> str:
    try:
        return MilestoneStatus(value).label
    except ValueError:
        return f"Unknown({value})"


@dataclass(frozen=True)
class Milestone:
    index: int
    amount: Decimal
    deadline: int
    status: MilestoneStatus
    proof_uri: str = ""
    reason_uri: str = ""
    submitted_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "i": self.index,
            "amountEth": str(self.amount),
            "deadline": self.deadline,
            "status": int(self.status),
            "statusLabel": self.status.label,
            "proofURI": self.proof_uri,
            "reasonURI": self.reason_uri,
            "submittedAt": self.submitted_at,
        }


@dataclass(frozen=True)
class EscrowSnapshot:
    address: str
    funded: bool
    total_amount: Decimal
    client_address: str
    provider_address: str
    milestone_count: int
    ledger_timestamp: int
    milestones: tuple[Milestone, ...] = ()

    def milestone(self, index: int) -> Milestone:
        if index < 0 or index >= len(self.milestones):
            raise ValidationError(
                f"milestone index {index} out of range (escrow has {len(self.milestones)})"
            )
        return self.milestones[index]

    def with_milestone(self, index: int, **changes: Any) -> "EscrowSnapshot":
        current = self.milestone(index)
        updated = list(self.milestones)
        updated[index] = replace(current, **changes)
        return replace(self, milestones=tuple(updated))

    @property
    def is_all_paid(self) -> bool:
        if not self.milestones:
            return False
        return all(m.status == MilestoneStatus.PAID for m in self.milestones)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "funded": self.funded,
            "totalAmountEth": str(self.total_amount),
            "client": self.client_address,
            "provider": self.provider_address,
            "count": self.milestone_count,
            "chainTime": self.ledger_timestamp,
            "milestones": [m.to_dict() for m in self.milestones],
        }


DEFAULT_TITLE = "Untitled Project"


@dataclass(frozen=True)
class EscrowMetadata:
    """Off-ledger descriptive record; never authoritative for escrow state."""

    address: str
    title: str
    client_address: str
    provider_address: str
    total_amount: Decimal
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "title": self.title,
            "client_address": self.client_address,
            "provider_address": self.provider_address,
            "total_amount": str(self.total_amount),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Provenance(str, Enum):
    EVENT_FEED = "event_feed"
    METADATA_STORE = "metadata_store"
    LOCAL_FALLBACK = "local_fallback"


@dataclass(frozen=True)
class RegistryEntry:
    address: str
    provenance: Provenance


@dataclass
class RegistryListing:
    entries: list[RegistryEntry] = field(default_factory=list)
    metadata: list[EscrowMetadata] = field(default_factory=list)
    event_feed_ok: bool = True

    @property
    def addresses(self) -> list[str]:
        return [e.address for e in self.entries]
