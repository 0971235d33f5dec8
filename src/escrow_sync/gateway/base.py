"""Execution Gateway contract.

The gateway holds signing authority for each role and broadcasts
state-changing calls. This layer never sees key material; it only learns a
transaction id and, later, whether the ledger confirmed or reverted it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Sequence


@dataclass(frozen=True)
class Confirmation:
    tx_id: str
    confirmed: bool
    reason: str | None = None
    block_number: int | None = None
    logs: list[dict] = field(default_factory=list)

    @property
    def reverted(self) -> bool:
        return not self.confirmed


@dataclass(frozen=True)
class SimulationResult:
    ok: bool
    reason: str | None = None


class ExecutionGateway(ABC):
    @abstractmethod
    async def dispatch(
        self,
        role: str,
        contract_address: str,
        function_name: str,
        args: Sequence[Any] = (),
        value: int = 0,
    ) -> str:
        """Broadcast a call; returns the transaction id.

        Raises InvalidAddress, InsufficientAuthorization or GatewayUnavailable.
        """

    @abstractmethod
    async def wait_for_confirmation(self, tx_id: str) -> Confirmation:
        """Block until mined. Raises ConfirmationTimeout."""

    @abstractmethod
    async def simulate(
        self,
        role: str,
        contract_address: str,
        function_name: str,
        args: Sequence[Any] = (),
        value: int = 0,
    ) -> SimulationResult:
        """Dry-run the call against current ledger state without broadcasting."""
