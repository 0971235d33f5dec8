"""Per-session cache owned by exactly one ReconciliationEngine."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..errors import StaleDataWarning
from ..models import EscrowSnapshot, RegistryListing


@dataclass
class SessionState:
    snapshot: EscrowSnapshot | None = None
    selected: str | None = None
    listing: RegistryListing = field(default_factory=RegistryListing)
    fetched_at: float = 0.0
    selected_milestone: int = 0
    optimistic: bool = False
    last_warning: StaleDataWarning | None = None
    notice: str | None = None
