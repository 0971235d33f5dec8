"""Ledger access: JSON-RPC transport, ABI fragments, snapshot reader."""

from .abi import ESCROW_CREATED_TOPIC, ESCROW_VIEWS, ESCROW_WRITES, FACTORY_CREATE_ESCROW, parse_escrow_created
from .reader import LedgerReader
from .rpc import CallReverted, LedgerRpc

__all__ = [
    "ESCROW_CREATED_TOPIC",
    "ESCROW_VIEWS",
    "ESCROW_WRITES",
    "FACTORY_CREATE_ESCROW",
    "parse_escrow_created",
    "LedgerReader",
    "CallReverted",
    "LedgerRpc",
]
