# cipherledger/tests/test_jsonrpc.py
import json

import httpx
import pytest

from cipherledger.client import build_client
from cipherledger.config import Settings
from cipherledger.crypto import (
    RelayerDecryptionService,
    RelayerEncryptionProvider,
    decode_clear_values,
    encode_clear_values,
)
from cipherledger.errors import EncryptionUnavailable, TransportFailure, TxError, UserRejected, classify
from cipherledger.ledger import JsonRpcLedgerClient

RPC_URL = "http://gateway.test/rpc"
RELAYER_URL = "http://relayer.test"


class FakeGateway:
    """Minimal JSON-RPC ledger gateway backed by a dict."""

    def __init__(self):
        self.records = {}
        self.order = []
        self.receipts = {}
        self.calls = []
        self.pending_polls = 0
        self.error = None
        self.receipt_status = "0x1"

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method, params = body["method"], body["params"]
        self.calls.append((method, params))

        def ok(result):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

        if self.error is not None and method in ("createRecord", "verifyDecryption"):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": self.error})

        if method == "getAllRecordIds":
            return ok(list(self.order))
        if method == "getRecord":
            return ok(self.records[params[0]])
        if method == "getEncryptedValue":
            return ok(self.records[params[0]]["_handle"])
        if method == "isAvailable":
            return ok(True)
        if method == "getContractAddress":
            return ok("0x0000000000000000000000000000000000000c1e")
        if method == "createRecord":
            p = params[0]
            self.records[p["id"]] = {
                "name": p["name"],
                "publicValue1": hex(p["publicValue1"]),
                "publicValue2": p["publicValue2"],
                "description": p["description"],
                "creator": p["from"],
                "timestamp": "0x65f00000",
                "isVerified": False,
                "decryptedValue": "0x0",
                "_handle": p["encryptedValue"],
            }
            self.order.append(p["id"])
            tx = "0x" + f"{len(self.calls):064x}"
            self.receipts[tx] = p["id"]
            return ok(tx)
        if method == "getTransactionReceipt":
            if self.pending_polls > 0:
                self.pending_polls -= 1
                return ok(None)
            return ok({"transactionHash": params[0], "status": self.receipt_status, "blockNumber": "0x10"})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "method not found"}})


def _ledger(gw, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(gw.handler))
    return JsonRpcLedgerClient(RPC_URL, account="0xabc", client=http, poll_interval_s=0.01, **kwargs)


def _relayer_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/v1/keyurl":
        return httpx.Response(200, json={"response": {"fheKeyInfo": []}})
    if request.url.path == "/v1/input-proof":
        body = json.loads(request.content)
        assert body["values"] == [len("hello")]
        return httpx.Response(200, json={"handles": ["0x" + "ab" * 32], "inputProof": "0x0102"})
    if request.url.path == "/v1/public-decrypt":
        return httpx.Response(
            200,
            json={"abiEncodedClearValues": "0x" + encode_clear_values([7]).hex(), "decryptionProof": "0xbeef"},
        )
    return httpx.Response(404)


def _relayer_client(handler=_relayer_handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=RELAYER_URL)


@pytest.mark.asyncio
async def test_record_fields_accept_hex_quantities():
    gw = FakeGateway()
    gw.records["r1"] = {
        "name": "hi",
        "publicValue1": "0x4",
        "publicValue2": 0,
        "description": "encrypted-record",
        "creator": "0xabc",
        "timestamp": "0x10",
        "isVerified": True,
        "decryptedValue": "0x0",
    }
    gw.order.append("r1")
    ledger = _ledger(gw)

    assert await ledger.list_record_ids() == ["r1"]
    fields = await ledger.get_record("r1")
    assert fields.label == "hi"
    assert fields.plain_tag == 4
    assert fields.created_at == 16
    assert fields.verified is True
    assert fields.decrypted_value == 0
    await ledger.aclose()


@pytest.mark.asyncio
async def test_create_record_polls_receipt():
    gw = FakeGateway()
    gw.pending_polls = 2
    ledger = _ledger(gw)

    tx = await ledger.create_record("r1", "label", b"\x01\x02", b"\x03", 5, 0, "cat")
    receipt = await tx.await_confirmation()

    assert receipt.status == 1
    assert receipt.block_number == 16
    sent = [p for m, p in gw.calls if m == "createRecord"][0][0]
    assert sent["encryptedValue"] == "0x0102"
    assert sent["inputProof"] == "0x03"
    assert sent["publicValue1"] == 5
    assert sum(1 for m, _ in gw.calls if m == "getTransactionReceipt") == 3
    await ledger.aclose()


@pytest.mark.asyncio
async def test_reverted_receipt_raises_tx_error():
    gw = FakeGateway()
    gw.receipt_status = "0x0"
    ledger = _ledger(gw)
    tx = await ledger.create_record("r1", "label", b"\x01", b"\x02", 5)
    with pytest.raises(TxError):
        await tx.await_confirmation()
    await ledger.aclose()


@pytest.mark.asyncio
async def test_signer_rejection_maps_to_user_rejected():
    gw = FakeGateway()
    gw.error = {"code": 4001, "message": "User rejected the request."}
    ledger = _ledger(gw)
    with pytest.raises(UserRejected):
        await ledger.create_record("r1", "label", b"\x01", b"\x02", 5)
    await ledger.aclose()


@pytest.mark.asyncio
async def test_http_errors_classify_as_transport_failure():
    def down(request):
        return httpx.Response(502, text="bad gateway")

    http = httpx.AsyncClient(transport=httpx.MockTransport(down))
    ledger = JsonRpcLedgerClient(RPC_URL, account="0xabc", client=http)
    with pytest.raises(httpx.HTTPStatusError) as info:
        await ledger.list_record_ids()
    err = classify(info.value)
    assert isinstance(err, TransportFailure)
    assert "bad gateway" not in str(err)
    await ledger.aclose()


@pytest.mark.asyncio
async def test_relayer_encryption():
    provider = RelayerEncryptionProvider(RELAYER_URL, client=_relayer_client())
    assert not provider.initialized
    await provider.initialize()
    assert provider.initialized

    enc = await provider.encrypt("0xc1e", "0xabc", 5)
    assert enc.ciphertext == b"\xab" * 32
    assert enc.proof == b"\x01\x02"


@pytest.mark.asyncio
async def test_relayer_not_ready_is_service_unavailable():
    def not_ready(request):
        return httpx.Response(503, json={"message": "keys not published"})

    provider = RelayerEncryptionProvider(RELAYER_URL, client=_relayer_client(not_ready))
    with pytest.raises(EncryptionUnavailable):
        await provider.initialize()
    assert not provider.initialized


@pytest.mark.asyncio
async def test_relayer_decryption_hands_results_to_submit():
    service = RelayerDecryptionService(RELAYER_URL, client=_relayer_client())
    seen = []

    async def submit(encoded, proof):
        seen.append((encoded, proof))
        return "tx-handle"

    out = await service.request_verified_decryption([b"\xab" * 32], "0xc1e", submit)
    assert out == "tx-handle"
    ((encoded, proof),) = seen
    assert decode_clear_values(encoded) == [7]
    assert proof == b"\xbe\xef"


@pytest.mark.asyncio
async def test_jsonrpc_backend_submit_and_refresh():
    gw = FakeGateway()
    settings = Settings(
        ledger_backend="jsonrpc",
        account="0xabc",
        post_write_refresh_delay_s=0.0,
        confirmation_poll_interval_s=0.01,
    )
    client = build_client(
        settings,
        ledger=_ledger(gw, contract_address=settings.contract_address),
        encryption=RelayerEncryptionProvider(RELAYER_URL, client=_relayer_client()),
        decryption=RelayerDecryptionService(RELAYER_URL, client=_relayer_client()),
    )

    res = await client.submit("hello", "0xabc")
    assert res.ok, res.message
    assert res.record.encrypted_value == b"\xab" * 32

    state = await client.refresh()
    assert [r.label for r in state.records] == ["hello"]
    assert state.records[0].plain_tag == 5
    assert state.records[0].encrypted_value == b"\xab" * 32
    await client.aclose()


def test_unknown_backend_is_rejected():
    with pytest.raises(ValueError):
        build_client(Settings(ledger_backend="carrier-pigeon"))
