"""Async JSON-RPC client for the ledger node."""

from __future__ import annotations

import itertools
from typing import Any

import httpx

from ..errors import LedgerUnavailable
from ..utils.logging_config import StructuredLogger
from .abi import decode_revert_reason

logger = StructuredLogger(__name__)

# JSON-RPC error code nodes use for execution reverts
_REVERT_CODE = 3


class CallReverted(Exception):
    """eth_call / eth_estimateGas predicted a revert."""

    def __init__(self, reason: str | None, data: str | None = None):
        super().__init__(reason or "execution reverted")
        self.reason = reason
        self.data = data


def _is_revert(error: dict) -> bool:
    if error.get("code") == _REVERT_CODE:
        return True
    return "revert" in str(error.get("message", "")).lower()


def to_hex(value: int) -> str:
    return hex(int(value))


class LedgerRpc:
    def __init__(
        self,
        rpc_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 20.0,
    ):
        self.rpc_url = rpc_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def aclose(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def request(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self._client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as exc:
            raise LedgerUnavailable(f"ledger RPC {method} failed", cause=exc) from exc
        except ValueError as exc:
            raise LedgerUnavailable(f"ledger RPC {method} returned invalid JSON", cause=exc) from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            if method in ("eth_call", "eth_estimateGas") and _is_revert(error):
                data = error.get("data")
                if isinstance(data, dict):
                    data = data.get("data")
                reason = decode_revert_reason(data) or error.get("message")
                raise CallReverted(reason, data)
            raise LedgerUnavailable(
                f"ledger RPC {method} error: {error.get('message', 'unknown')}",
                cause=error.get("code"),
            )
        if not isinstance(body, dict) or "result" not in body:
            raise LedgerUnavailable(f"ledger RPC {method} returned no result")
        return body["result"]

    async def call(
        self,
        to: str,
        data: str,
        *,
        sender: str | None = None,
        value: int = 0,
        block: str = "latest",
    ) -> str:
        tx: dict[str, Any] = {"to": to, "data": data}
        if sender:
            tx["from"] = sender
        if value:
            tx["value"] = to_hex(value)
        return await self.request("eth_call", [tx, block])

    async def estimate_gas(self, to: str, data: str, *, sender: str | None = None, value: int = 0) -> int:
        tx: dict[str, Any] = {"to": to, "data": data}
        if sender:
            tx["from"] = sender
        if value:
            tx["value"] = to_hex(value)
        return int(await self.request("eth_estimateGas", [tx]), 16)

    async def block_number(self) -> int:
        return int(await self.request("eth_blockNumber", []), 16)

    async def latest_block_timestamp(self) -> int:
        block = await self.request("eth_getBlockByNumber", ["latest", False])
        if not block:
            raise LedgerUnavailable("ledger returned no latest block")
        return int(block["timestamp"], 16)

    async def get_logs(self, address: str, topics: list[str | None], from_block: int, to_block: int) -> list[dict]:
        flt = {
            "address": address,
            "topics": topics,
            "fromBlock": to_hex(from_block),
            "toBlock": to_hex(to_block),
        }
        return await self.request("eth_getLogs", [flt]) or []

    async def get_transaction_receipt(self, tx_hash: str) -> dict | None:
        return await self.request("eth_getTransactionReceipt", [tx_hash])
