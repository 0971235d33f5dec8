import asyncio
import json
import unittest
from decimal import Decimal

import httpx
from eth_abi import encode

from escrow_sync.errors import LedgerUnavailable, ValidationError
from escrow_sync.ledger.abi import (
    ESCROW_CREATED_TOPIC,
    ESCROW_VIEWS,
    ESCROW_WRITES,
    FACTORY_CREATE_ESCROW,
    MILESTONE_TUPLE,
    decode_revert_reason,
    parse_escrow_created,
)
from escrow_sync.ledger.reader import LedgerReader
from escrow_sync.ledger.rpc import CallReverted, LedgerRpc
from escrow_sync.models import MilestoneStatus

from escrow_fakes import CLIENT, ESCROW_A, ESCROW_B, FACTORY, PROVIDER

RPC_URL = "http://ledger.test"


def _hex(data: bytes) -> str:
    return "0x" + data.hex()


def _revert_data(reason: str) -> str:
    return "0x08c379a0" + encode(["string"], [reason]).hex()


def _created_log(escrow, address=FACTORY):
    pad = "0x" + "00" * 12
    return {
        "address": address.lower(),
        "topics": [ESCROW_CREATED_TOPIC, pad + escrow[2:].lower(), pad + CLIENT[2:].lower(), pad + PROVIDER[2:].lower()],
        "data": "0x",
    }


class FakeNode:
    """Answers JSON-RPC as a single escrow contract at ESCROW_A would."""

    def __init__(self):
        self.milestones = [
            (3 * 10**17, 1_700_000_000, 1, "ipfs://proof", "", 1_699_000_000),
            (7 * 10**17, 1_800_000_000, 0, "", "", 0),
        ]
        self.block_timestamp = 1_699_500_000
        self.block_number = 100
        self.logs = []
        self.fail_status = None
        self.requests = []
        selectors = {name: fn.selector.hex() for name, fn in ESCROW_VIEWS.items()}
        self._by_selector = {v: k for k, v in selectors.items()}

    def _view(self, to, data):
        if to.lower() != ESCROW_A.lower():
            return "0x"
        name = self._by_selector[data[2:10]]
        if name == "client":
            return _hex(encode(["address"], [CLIENT]))
        if name == "provider":
            return _hex(encode(["address"], [PROVIDER]))
        if name == "funded":
            return _hex(encode(["bool"], [True]))
        if name == "totalAmount":
            return _hex(encode(["uint256"], [10**18]))
        if name == "milestonesCount":
            return _hex(encode(["uint256"], [len(self.milestones)]))
        index = int(data[10:], 16)
        return _hex(encode([MILESTONE_TUPLE], [self.milestones[index]]))

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_status:
            return httpx.Response(self.fail_status, text="upstream down")
        body = json.loads(request.content)
        self.requests.append(body)
        method, params = body["method"], body["params"]
        if method == "eth_call":
            tx = params[0]
            if tx.get("from") == "revert":
                return httpx.Response(
                    200,
                    json={
                        "jsonrpc": "2.0",
                        "id": body["id"],
                        "error": {"code": 3, "message": "execution reverted", "data": _revert_data("LEN_MISMATCH")},
                    },
                )
            result = self._view(tx["to"], tx["data"])
        elif method == "eth_estimateGas":
            if params[0].get("from") == "revert":
                return httpx.Response(
                    200,
                    json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32000, "message": "execution reverted"}},
                )
            result = hex(21_000)
        elif method == "eth_getBlockByNumber":
            result = {"number": hex(self.block_number), "timestamp": hex(self.block_timestamp)}
        elif method == "eth_blockNumber":
            result = hex(self.block_number)
        elif method == "eth_getLogs":
            result = self.logs
        else:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "method not found"}}
            )
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


class LedgerTestCase(unittest.TestCase):
    def setUp(self):
        self.node = FakeNode()

    def run_with_reader(self, fn):
        async def main():
            async with httpx.AsyncClient(transport=httpx.MockTransport(self.node.handler)) as client:
                rpc = LedgerRpc(RPC_URL, client=client)
                return await fn(LedgerReader(rpc), rpc)

        return asyncio.run(main())


class ReaderTests(LedgerTestCase):
    def test_read_snapshot(self):
        snap = self.run_with_reader(lambda reader, rpc: reader.read_snapshot(ESCROW_A.lower()))

        self.assertEqual(snap.address, ESCROW_A)
        self.assertTrue(snap.funded)
        self.assertEqual(snap.total_amount, Decimal("1"))
        self.assertEqual(snap.client_address, CLIENT)
        self.assertEqual(snap.provider_address, PROVIDER)
        self.assertEqual(snap.milestone_count, 2)
        self.assertEqual(snap.ledger_timestamp, 1_699_500_000)

        first, second = snap.milestones
        self.assertEqual(first.status, MilestoneStatus.SUBMITTED)
        self.assertEqual(first.amount, Decimal("0.3"))
        self.assertEqual(first.proof_uri, "ipfs://proof")
        self.assertEqual(first.submitted_at, 1_699_000_000)
        self.assertEqual(second.index, 1)
        self.assertEqual(second.status, MilestoneStatus.PENDING)

    def test_non_escrow_address_is_a_validation_error(self):
        with self.assertRaises(ValidationError):
            self.run_with_reader(lambda reader, rpc: reader.read_snapshot(ESCROW_B))

    def test_unknown_milestone_status_is_a_validation_error(self):
        self.node.milestones[1] = (7 * 10**17, 1_800_000_000, 9, "", "", 0)
        with self.assertRaises(ValidationError) as ctx:
            self.run_with_reader(lambda reader, rpc: reader.read_snapshot(ESCROW_A))
        self.assertIn("milestone 1 has unknown status 9", ctx.exception.message)

    def test_transport_failure_is_ledger_unavailable(self):
        self.node.fail_status = 502
        with self.assertRaises(LedgerUnavailable):
            self.run_with_reader(lambda reader, rpc: reader.read_snapshot(ESCROW_A))

    def test_total_amount_wei(self):
        total = self.run_with_reader(lambda reader, rpc: reader.read_total_amount_wei(ESCROW_A))
        self.assertEqual(total, 10**18)

    def test_recent_creations_newest_first_within_window(self):
        self.node.logs = [_created_log(ESCROW_A), _created_log(ESCROW_B)]
        created = self.run_with_reader(lambda reader, rpc: reader.recent_creations(FACTORY, 10))

        self.assertEqual(created, [ESCROW_B, ESCROW_A])
        flt = self.node.requests[-1]["params"][0]
        self.assertEqual(flt["fromBlock"], hex(91))
        self.assertEqual(flt["toBlock"], hex(100))
        self.assertEqual(flt["topics"], [ESCROW_CREATED_TOPIC])


class RpcTests(LedgerTestCase):
    def test_revert_is_decoded(self):
        async def call(reader, rpc):
            await rpc.call(FACTORY, "0x", sender="revert")

        with self.assertRaises(CallReverted) as ctx:
            self.run_with_reader(call)
        self.assertEqual(ctx.exception.reason, "LEN_MISMATCH")

    def test_rpc_error_is_ledger_unavailable(self):
        with self.assertRaises(LedgerUnavailable):
            self.run_with_reader(lambda reader, rpc: rpc.request("eth_chainId", []))

    def test_block_number(self):
        self.assertEqual(self.run_with_reader(lambda reader, rpc: rpc.block_number()), 100)

    def test_estimate_gas(self):
        gas = self.run_with_reader(lambda reader, rpc: rpc.estimate_gas(ESCROW_A, "0x", sender=CLIENT, value=5))
        self.assertEqual(gas, 21_000)
        tx = self.node.requests[-1]["params"][0]
        self.assertEqual(tx["value"], "0x5")

    def test_estimate_gas_revert_without_reason(self):
        with self.assertRaises(CallReverted) as ctx:
            self.run_with_reader(lambda reader, rpc: rpc.estimate_gas(ESCROW_A, "0x", sender="revert"))
        self.assertEqual(ctx.exception.reason, "execution reverted")


class AbiTests(unittest.TestCase):
    def test_selectors(self):
        self.assertEqual(ESCROW_WRITES["fund"].selector.hex(), "b60d4288")
        self.assertEqual(ESCROW_WRITES["approve"].signature, "approve(uint256)")
        self.assertEqual(FACTORY_CREATE_ESCROW.signature, "createEscrow(address,address,uint256[],uint64[])")

    def test_encode_checks_arity(self):
        with self.assertRaises(ValueError):
            ESCROW_WRITES["submit"].encode_call(0)

    def test_parse_escrow_created_filters_by_factory(self):
        logs = [_created_log(ESCROW_A), _created_log(ESCROW_B, address=CLIENT), {"topics": []}]
        self.assertEqual(parse_escrow_created(logs, FACTORY), [ESCROW_A])
        self.assertEqual(parse_escrow_created(logs), [ESCROW_A, ESCROW_B])

    def test_decode_revert_reason(self):
        self.assertEqual(decode_revert_reason(_revert_data("ALREADY_FUNDED")), "ALREADY_FUNDED")
        self.assertIsNone(decode_revert_reason("0xdeadbeef"))
        self.assertIsNone(decode_revert_reason(None))


if __name__ == "__main__":
    unittest.main()
