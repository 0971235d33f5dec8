"""Escrow and factory contract ABI fragments."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from eth_abi import decode, encode
from eth_utils import decode_hex, function_signature_to_4byte_selector, keccak, to_checksum_address

# Error(string) selector used by require/revert messages
_ERROR_SELECTOR = bytes.fromhex("08c379a0")

MILESTONE_TUPLE = "(uint256,uint64,uint8,string,string,uint64)"


@dataclass(frozen=True)
class ContractFunction:
    name: str
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    payable: bool = False

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)

    def encode_call(self, *args: Any) -> str:
        if len(args) != len(self.inputs):
            raise ValueError(f"{self.signature} takes {len(self.inputs)} argument(s), got {len(args)}")
        payload = self.selector + encode(list(self.inputs), list(args))
        return "0x" + payload.hex()

    def decode_result(self, data: str) -> tuple:
        raw = decode_hex(data) if data else b""
        return decode(list(self.outputs), raw)


ESCROW_VIEWS = {
    "client": ContractFunction("client", outputs=("address",)),
    "provider": ContractFunction("provider", outputs=("address",)),
    "funded": ContractFunction("funded", outputs=("bool",)),
    "totalAmount": ContractFunction("totalAmount", outputs=("uint256",)),
    "milestonesCount": ContractFunction("milestonesCount", outputs=("uint256",)),
    "getMilestone": ContractFunction("getMilestone", inputs=("uint256",), outputs=(MILESTONE_TUPLE,)),
}

ESCROW_WRITES = {
    "fund": ContractFunction("fund", payable=True),
    "submit": ContractFunction("submit", inputs=("uint256", "string")),
    "approve": ContractFunction("approve", inputs=("uint256",)),
    "reject": ContractFunction("reject", inputs=("uint256", "string")),
    "claim": ContractFunction("claim", inputs=("uint256",)),
}

FACTORY_CREATE_ESCROW = ContractFunction(
    "createEscrow",
    inputs=("address", "address", "uint256[]", "uint64[]"),
    outputs=("address",),
)

ESCROW_CREATED_SIGNATURE = "EscrowCreated(address,address,address)"
ESCROW_CREATED_TOPIC = "0x" + keccak(text=ESCROW_CREATED_SIGNATURE).hex()


def topic_to_address(topic: str) -> str:
    raw = decode_hex(topic)
    return to_checksum_address(raw[-20:])


def parse_escrow_created(logs: list[dict], factory_address: str | None = None) -> list[str]:
    """Extract created escrow addresses from raw receipt/filter logs, in log order."""
    found: list[str] = []
    for entry in logs:
        topics = entry.get("topics") or []
        if len(topics) < 2 or str(topics[0]).lower() != ESCROW_CREATED_TOPIC.lower():
            continue
        if factory_address and str(entry.get("address", "")).lower() != factory_address.lower():
            continue
        found.append(topic_to_address(topics[1]))
    return found


def decode_revert_reason(data: str | None) -> str | None:
    if not data or not isinstance(data, str):
        return None
    raw = decode_hex(data)
    if raw[:4] != _ERROR_SELECTOR:
        return None
    try:
        (reason,) = decode(["string"], raw[4:])
    except Exception:
        return None
    return reason


WRITE_FUNCTIONS = {**ESCROW_WRITES, FACTORY_CREATE_ESCROW.name: FACTORY_CREATE_ESCROW}
