"""HTTP client for a remote signing gateway."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Sequence

import httpx

from ..errors import (
    ConfirmationTimeout,
    GatewayUnavailable,
    InsufficientAuthorization,
    InvalidAddress,
    LedgerUnavailable,
    ValidationError,
)
from ..ledger.abi import WRITE_FUNCTIONS
from ..ledger.rpc import CallReverted, LedgerRpc
from ..models import canonical_address
from ..utils.config_loader import GatewayConfig
from ..utils.logging_config import StructuredLogger
from .base import Confirmation, ExecutionGateway, SimulationResult

logger = StructuredLogger(__name__)


def _encode(function_name: str, args: Sequence[Any]) -> str:
    fn = WRITE_FUNCTIONS.get(function_name)
    if fn is None:
        raise ValidationError(f"unknown contract function '{function_name}'")
    return fn.encode_call(*args)


def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)


class HttpExecutionGateway(ExecutionGateway):
    """Dispatches through ``POST {base_url}/v1/dispatch``; confirms by polling receipts."""

    def __init__(
        self,
        config: GatewayConfig,
        rpc: LedgerRpc,
        *,
        role_addresses: Mapping[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.rpc = rpc
        self.role_addresses = dict(role_addresses or {})
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def dispatch(
        self,
        role: str,
        contract_address: str,
        function_name: str,
        args: Sequence[Any] = (),
        value: int = 0,
    ) -> str:
        contract_address = canonical_address(contract_address)
        payload = {
            "role": role,
            "to": contract_address,
            "function": function_name,
            "data": _encode(function_name, args),
            "value": hex(int(value)),
        }
        try:
            resp = await self._client.post("/v1/dispatch", json=payload)
        except httpx.HTTPError as exc:
            raise GatewayUnavailable("execution gateway unreachable", cause=exc) from exc

        if resp.status_code == 400:
            raise InvalidAddress(f"gateway rejected call: {_detail(resp)}")
        if resp.status_code in (401, 403):
            raise InsufficientAuthorization(f"role '{role}' not authorized: {_detail(resp)}")
        if resp.status_code >= 400:
            raise GatewayUnavailable(f"gateway error {resp.status_code}: {_detail(resp)}")

        try:
            tx_id = str(resp.json()["tx_hash"])
        except (ValueError, KeyError, TypeError) as exc:
            raise GatewayUnavailable("gateway response missing tx_hash", cause=exc) from exc

        logger.info("Gateway dispatched", role=role, to=contract_address, function=function_name, tx=tx_id)
        return tx_id

    async def wait_for_confirmation(self, tx_id: str) -> Confirmation:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.confirmation_timeout_seconds
        while True:
            try:
                receipt = await self.rpc.get_transaction_receipt(tx_id)
            except LedgerUnavailable as exc:
                # Polling is a read; a transient miss just means poll again
                logger.warning("Receipt poll failed", tx=tx_id, error=exc.message)
                receipt = None

            if receipt:
                confirmed = int(receipt.get("status", "0x1"), 16) == 1
                return Confirmation(
                    tx_id=tx_id,
                    confirmed=confirmed,
                    reason=None if confirmed else "status=0x0",
                    block_number=int(receipt["blockNumber"], 16) if receipt.get("blockNumber") else None,
                    logs=list(receipt.get("logs") or []),
                )

            if loop.time() >= deadline:
                raise ConfirmationTimeout(
                    f"transaction {tx_id} not mined within {self.config.confirmation_timeout_seconds}s"
                )
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def simulate(
        self,
        role: str,
        contract_address: str,
        function_name: str,
        args: Sequence[Any] = (),
        value: int = 0,
    ) -> SimulationResult:
        data = _encode(function_name, args)
        try:
            await self.rpc.call(
                canonical_address(contract_address),
                data,
                sender=self.role_addresses.get(role),
                value=value,
            )
        except CallReverted as exc:
            return SimulationResult(ok=False, reason=exc.reason)
        return SimulationResult(ok=True)
