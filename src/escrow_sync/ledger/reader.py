"""Read-only views over escrow and factory contracts.

A snapshot read is a pure function of the escrow address: top-level fields are
read concurrently, then every milestone concurrently, then the ledger clock.
Retries are the caller's business.
"""

from __future__ import annotations

import asyncio

from eth_abi.exceptions import DecodingError

from ..errors import ValidationError
from ..models import EscrowSnapshot, Milestone, MilestoneStatus, canonical_address, wei_to_ether
from ..observability import traced
from ..utils.logging_config import StructuredLogger
from .abi import ESCROW_CREATED_TOPIC, ESCROW_VIEWS, ContractFunction, parse_escrow_created
from .rpc import CallReverted, LedgerRpc

logger = StructuredLogger(__name__)

_TOP_LEVEL = ("client", "provider", "funded", "totalAmount", "milestonesCount")


class LedgerReader:
    def __init__(self, rpc: LedgerRpc):
        self.rpc = rpc

    async def _view(self, address: str, fn: ContractFunction, *args):
        try:
            raw = await self.rpc.call(address, fn.encode_call(*args))
            return fn.decode_result(raw)
        except (DecodingError, CallReverted) as exc:
            raise ValidationError(
                f"{address} did not answer {fn.signature} as an escrow contract", cause=exc
            ) from exc

    async def _read_milestone(self, address: str, index: int) -> Milestone:
        ((amount, deadline, status, proof_uri, reason_uri, submitted_at),) = await self._view(
            address, ESCROW_VIEWS["getMilestone"], index
        )
        try:
            status = MilestoneStatus(int(status))
        except ValueError as exc:
            raise ValidationError(f"{address} milestone {index} has unknown status {status}", cause=exc) from exc
        return Milestone(
            index=index,
            amount=wei_to_ether(amount),
            deadline=int(deadline),
            status=status,
            proof_uri=proof_uri,
            reason_uri=reason_uri,
            submitted_at=int(submitted_at),
        )

    async def read_snapshot(self, address: str) -> EscrowSnapshot:
        address = canonical_address(address)
        with traced(address, "ledger.read_snapshot") as span:
            results = await asyncio.gather(*(self._view(address, ESCROW_VIEWS[name]) for name in _TOP_LEVEL))
            (client,), (provider,), (funded,), (total,), (count,) = results

            milestones = await asyncio.gather(*(self._read_milestone(address, i) for i in range(int(count))))
            ledger_time = await self.rpc.latest_block_timestamp()

            span.set(milestones=int(count), ledger_time=ledger_time)
        return EscrowSnapshot(
            address=address,
            funded=bool(funded),
            total_amount=wei_to_ether(total),
            client_address=canonical_address(client),
            provider_address=canonical_address(provider),
            milestone_count=int(count),
            ledger_timestamp=ledger_time,
            milestones=tuple(milestones),
        )

    async def read_total_amount_wei(self, address: str) -> int:
        (total,) = await self._view(canonical_address(address), ESCROW_VIEWS["totalAmount"])
        return int(total)

    async def recent_creations(self, factory_address: str, window_blocks: int) -> list[str]:
        """Escrows created by the factory within the last ``window_blocks`` blocks, newest first."""
        latest = await self.rpc.block_number()
        from_block = max(0, latest - (window_blocks - 1))
        logs = await self.rpc.get_logs(factory_address, [ESCROW_CREATED_TOPIC], from_block, latest)
        created = parse_escrow_created(logs, factory_address)
        created.reverse()
        return created
