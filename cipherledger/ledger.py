# FILE: cipherledger/ledger.py
from __future__ import annotations

"""
Ledger access: the authoritative, append-only store of Records and their
verification status.

Backends:
  - InMemoryLedger       : contract semantics in-process (tests / dev).
  - JsonRpcLedgerClient  : JSON-RPC 2.0 gateway over httpx.

Writes return a TxHandle. Acceptance of the transaction and its
confirmation are separate events: `create_record()` returning means the
network accepted the transaction; `await_confirmation()` returning means it
was mined and did not revert.

Notes:
  - This module does not sign anything; signing is the gateway's (or the
    wallet's) concern. A signer that declines surfaces as a JSON-RPC error
    with code 4001 and is classified as UserRejected upstream.
  - Ciphertexts and proofs are opaque bytes here and are never logged.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import asyncio
import hashlib
import itertools
import logging
import threading
import time

import httpx
from pydantic import ValidationError

from .crypto import LocalCoprocessor, decode_clear_values
from .errors import TransportFailure, TxError, UserRejected
from .schemas import JsonRpcResponse, RecordFields, TxReceipt, decode_hex, encode_hex

# ---------- Optional metrics (no-op if prometheus_client missing) ----------

try:
    from prometheus_client import Counter, Histogram  # type: ignore

    _HAS_PROM = True
except Exception:  # pragma: no cover
    _HAS_PROM = False


class _NopMetric:
    def labels(self, *_, **__):
        return self

    def inc(self, *_, **__):
        pass

    def observe(self, *_, **__):
        pass


if _HAS_PROM:
    _LEDGER_CALL_LATENCY = Histogram(
        "cipherledger_ledger_call_latency_seconds",
        "Ledger call latency (seconds)",
        buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
        labelnames=("backend", "method", "ok"),
    )
    _TX_SUBMITTED = Counter(
        "cipherledger_ledger_tx_submitted_total",
        "Transactions accepted by the ledger",
        labelnames=("backend", "kind"),
    )
    _TX_REVERTED = Counter(
        "cipherledger_ledger_tx_reverted_total",
        "Transactions that were mined but reverted",
        labelnames=("backend", "kind"),
    )
else:
    _LEDGER_CALL_LATENCY = _NopMetric()
    _TX_SUBMITTED = _NopMetric()
    _TX_REVERTED = _NopMetric()


logger = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    pass


# ---------- Transaction handle ----------


class TxHandle:
    """
    A transaction the network has accepted. `await_confirmation()` resolves
    with the receipt once mined, or raises TxError on revert.
    """

    tx_hash: str = ""
    kind: str = ""

    async def await_confirmation(self) -> TxReceipt:
        raise NotImplementedError


# ---------- Base Interface ----------


class LedgerClient:
    """
    Abstract ledger API. Read methods are idempotent; write methods return
    a TxHandle once the transaction is accepted.
    """

    backend = "abstract"

    # Read

    async def context_address(self) -> str:
        raise NotImplementedError

    async def list_record_ids(self) -> List[str]:
        raise NotImplementedError

    async def get_record(self, record_id: str) -> RecordFields:
        raise NotImplementedError

    async def get_encrypted_handle(self, record_id: str) -> bytes:
        raise NotImplementedError

    async def is_service_available(self) -> bool:
        raise NotImplementedError

    # Write

    async def create_record(
        self,
        record_id: str,
        label: str,
        ciphertext: bytes,
        proof: bytes,
        plain_tag: int,
        reserved: int = 0,
        category: str = "",
    ) -> TxHandle:
        raise NotImplementedError

    async def submit_verification(
        self,
        record_id: str,
        clear_values_encoded: bytes,
        proof: bytes,
    ) -> TxHandle:
        raise NotImplementedError

    @property
    def account(self) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


# ---------- In-Memory Implementation (tests / dev) ----------


class SignerRejectedError(Exception):
    """What a wallet raises when its holder declines (EIP-1193 code 4001)."""

    code = 4001

    def __init__(self, message: str = "user rejected transaction"):
        super().__init__(message)


@dataclass
class _StoredRecord:
    id: str
    label: str
    handle: bytes
    plain_tag: int
    reserved: int
    category: str
    creator: str
    created_at: int
    verified: bool = False
    decrypted_value: int = 0


class _LedgerState:
    """State shared by every account view of one InMemoryLedger."""

    def __init__(self) -> None:
        self.records: Dict[str, _StoredRecord] = {}
        self.order: List[str] = []
        self.lock = threading.RLock()
        self.block = 0
        self.tx_seq = itertools.count(1)
        # (kind, record_id) per accepted transaction, in order
        self.tx_log: List[Tuple[str, str]] = []


class _MemoryTx(TxHandle):
    def __init__(self, tx_hash: str, kind: str, outcome: "asyncio.Future[Tuple[Optional[TxReceipt], Optional[str]]]"):
        self.tx_hash = tx_hash
        self.kind = kind
        self._outcome = outcome

    async def await_confirmation(self) -> TxReceipt:
        receipt, revert_reason = await asyncio.shield(self._outcome)
        if revert_reason is not None:
            raise TxError(f"transaction reverted: {revert_reason}")
        if receipt is None:
            raise LedgerError(f"transaction {self.tx_hash} has no receipt")
        return receipt


class InMemoryLedger(LedgerClient):
    """
    In-process ledger with the contract's semantics:

      - record ids are unique; a duplicate create reverts
      - the input proof must bind the ciphertext to (contract, sender)
      - the decryption proof must bind the clear values to the handle
      - a second attestation for a verified record reverts

    Writes are accepted immediately and mined after `block_delay_s` on the
    running loop. Fault-injection knobs are plain attributes so tests can
    flip them between calls.
    """

    backend = "memory"

    def __init__(
        self,
        coprocessor: LocalCoprocessor,
        *,
        account: str = "0x00000000000000000000000000000000000a11ce",
        contract_address: str = "0x0000000000000000000000000000000000000c1e",
        clock: Callable[[], float] = time.time,
        block_delay_s: float = 0.0,
        _state: Optional[_LedgerState] = None,
    ):
        self._cop = coprocessor
        self._account = account
        self._contract = contract_address
        self._clock = clock
        self.block_delay_s = float(block_delay_s)
        self._state = _state or _LedgerState()

        # fault injection
        self.available = True
        self.reject_signatures = False
        self.fail_enumeration = False
        self.unreadable_ids: Set[str] = set()
        self.read_delay_s = 0.0

    def as_account(self, account: str) -> "InMemoryLedger":
        """Another signer's view of the same ledger."""
        view = InMemoryLedger(
            self._cop,
            account=account,
            contract_address=self._contract,
            clock=self._clock,
            block_delay_s=self.block_delay_s,
            _state=self._state,
        )
        return view

    @property
    def account(self) -> str:
        return self._account

    @property
    def tx_log(self) -> List[Tuple[str, str]]:
        with self._state.lock:
            return list(self._state.tx_log)

    def attestation_count(self, record_id: Optional[str] = None) -> int:
        return sum(
            1
            for kind, rid in self.tx_log
            if kind == "verify" and (record_id is None or rid == record_id)
        )

    async def _read_pause(self) -> None:
        await asyncio.sleep(self.read_delay_s)

    # Read

    async def context_address(self) -> str:
        return self._contract

    async def list_record_ids(self) -> List[str]:
        await self._read_pause()
        if self.fail_enumeration:
            raise TransportFailure("record enumeration failed")
        with self._state.lock:
            return list(self._state.order)

    def _get(self, record_id: str) -> _StoredRecord:
        with self._state.lock:
            rec = self._state.records.get(record_id)
        if rec is None:
            raise LedgerError(f"record {record_id!r} does not exist")
        return rec

    async def get_record(self, record_id: str) -> RecordFields:
        await self._read_pause()
        if record_id in self.unreadable_ids:
            raise TransportFailure("record read failed")
        with self._state.lock:
            rec = self._get(record_id)
            return RecordFields(
                label=rec.label,
                plain_tag=rec.plain_tag,
                reserved=rec.reserved,
                category=rec.category,
                creator=rec.creator,
                created_at=rec.created_at,
                verified=rec.verified,
                decrypted_value=rec.decrypted_value,
            )

    async def get_encrypted_handle(self, record_id: str) -> bytes:
        await self._read_pause()
        return self._get(record_id).handle

    async def is_service_available(self) -> bool:
        await asyncio.sleep(0)
        return bool(self.available and self._cop.ready)

    # Write

    def _accept(self, kind: str, record_id: str, effect: Callable[[], Optional[str]]) -> TxHandle:
        if self.reject_signatures:
            raise SignerRejectedError()
        loop = asyncio.get_running_loop()
        with self._state.lock:
            seq = next(self._state.tx_seq)
            self._state.tx_log.append((kind, record_id))
        tx_hash = "0x" + hashlib.sha256(f"{seq}:{kind}:{record_id}".encode("utf-8")).hexdigest()
        outcome: "asyncio.Future[Tuple[Optional[TxReceipt], Optional[str]]]" = loop.create_future()
        _TX_SUBMITTED.labels(self.backend, kind).inc()

        async def _mine() -> None:
            if self.block_delay_s > 0:
                await asyncio.sleep(self.block_delay_s)
            with self._state.lock:
                try:
                    reason = effect()
                except Exception as e:
                    reason = f"execution error: {type(e).__name__}"
                self._state.block += 1
                block = self._state.block
            if reason is not None:
                _TX_REVERTED.labels(self.backend, kind).inc()
                logger.info("tx reverted", extra={"tx_hash": tx_hash, "reason": reason})
                if not outcome.done():
                    outcome.set_result((None, reason))
                return
            receipt = TxReceipt(tx_hash=tx_hash, status=1, block_number=block)
            if not outcome.done():
                outcome.set_result((receipt, None))

        loop.create_task(_mine())
        return _MemoryTx(tx_hash, kind, outcome)

    async def create_record(
        self,
        record_id: str,
        label: str,
        ciphertext: bytes,
        proof: bytes,
        plain_tag: int,
        reserved: int = 0,
        category: str = "",
    ) -> TxHandle:
        await asyncio.sleep(0)
        sender = self._account

        def _effect() -> Optional[str]:
            if record_id in self._state.records:
                return "record already exists"
            if not self._cop.verify_input(bytes(ciphertext), bytes(proof), self._contract, sender):
                return "invalid input proof"
            self._state.records[record_id] = _StoredRecord(
                id=record_id,
                label=label,
                handle=bytes(ciphertext),
                plain_tag=int(plain_tag),
                reserved=int(reserved),
                category=category,
                creator=sender,
                created_at=int(self._clock()),
            )
            self._state.order.append(record_id)
            return None

        return self._accept("create", record_id, _effect)

    async def submit_verification(
        self,
        record_id: str,
        clear_values_encoded: bytes,
        proof: bytes,
    ) -> TxHandle:
        await asyncio.sleep(0)

        def _effect() -> Optional[str]:
            rec = self._state.records.get(record_id)
            if rec is None:
                return "record does not exist"
            if rec.verified:
                return "record already verified"
            if not self._cop.verify_decryption([rec.handle], bytes(clear_values_encoded), bytes(proof)):
                return "invalid decryption proof"
            values = decode_clear_values(bytes(clear_values_encoded))
            rec.verified = True
            rec.decrypted_value = int(values[0])
            return None

        return self._accept("verify", record_id, _effect)


# ---------- JSON-RPC Implementation ----------


class _RpcTx(TxHandle):
    def __init__(self, client: "JsonRpcLedgerClient", tx_hash: str, kind: str):
        self._client = client
        self.tx_hash = tx_hash
        self.kind = kind

    async def await_confirmation(self) -> TxReceipt:
        while True:
            result = await self._client._call("getTransactionReceipt", [self.tx_hash])
            if result:
                try:
                    receipt = TxReceipt.model_validate(result)
                except ValidationError as e:
                    raise TransportFailure("malformed transaction receipt") from e
                if receipt.status != 1:
                    _TX_REVERTED.labels(self._client.backend, self.kind).inc()
                    raise TxError("transaction reverted")
                return receipt
            await asyncio.sleep(self._client.poll_interval_s)


class JsonRpcLedgerClient(LedgerClient):
    """
    JSON-RPC 2.0 ledger gateway.

    The gateway owns the signer for `account`; write methods return the
    transaction hash as soon as the transaction is broadcast. Byte fields
    travel as 0x-prefixed hex.
    """

    backend = "jsonrpc"

    def __init__(
        self,
        url: str,
        *,
        account: str,
        contract_address: Optional[str] = None,
        chain_id: Optional[int] = None,
        timeout_s: float = 30.0,
        poll_interval_s: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = url
        self._account = account
        self._contract = contract_address
        self._chain_id = chain_id
        self.poll_interval_s = float(poll_interval_s)
        self._ids = itertools.count(1)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout_s,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
        )

    @property
    def account(self) -> str:
        return self._account

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        t0 = time.perf_counter()
        ok = "no"
        try:
            resp = await self._client.post(self._url, json=payload)
            resp.raise_for_status()
            try:
                body = JsonRpcResponse.model_validate(resp.json())
            except (ValueError, ValidationError) as e:
                raise TransportFailure(f"malformed JSON-RPC response for {method}") from e
            if body.error is not None:
                code = body.error.code
                text = (body.error.message or "").lower()
                if code in (4001, "4001", "ACTION_REJECTED") or "rejected" in text or "denied" in text:
                    raise UserRejected(f"{method} rejected by signer")
                raise TransportFailure(f"{method} failed with JSON-RPC error {code}")
            ok = "yes"
            return body.result
        finally:
            _LEDGER_CALL_LATENCY.labels(self.backend, method, ok).observe(time.perf_counter() - t0)

    # Read

    async def context_address(self) -> str:
        if not self._contract:
            self._contract = str(await self._call("getContractAddress", []))
        return self._contract

    async def list_record_ids(self) -> List[str]:
        result = await self._call("getAllRecordIds", [])
        return [str(x) for x in (result or [])]

    async def get_record(self, record_id: str) -> RecordFields:
        result = await self._call("getRecord", [record_id])
        try:
            return RecordFields.model_validate(result)
        except ValidationError as e:
            raise TransportFailure(f"malformed record {record_id!r}") from e

    async def get_encrypted_handle(self, record_id: str) -> bytes:
        result = await self._call("getEncryptedValue", [record_id])
        try:
            return decode_hex(result)
        except ValueError as e:
            raise TransportFailure("malformed ciphertext handle") from e

    async def is_service_available(self) -> bool:
        return bool(await self._call("isAvailable", []))

    # Write

    async def create_record(
        self,
        record_id: str,
        label: str,
        ciphertext: bytes,
        proof: bytes,
        plain_tag: int,
        reserved: int = 0,
        category: str = "",
    ) -> TxHandle:
        tx_hash = await self._call(
            "createRecord",
            [
                {
                    "from": self._account,
                    "chainId": self._chain_id,
                    "id": record_id,
                    "name": label,
                    "encryptedValue": encode_hex(ciphertext),
                    "inputProof": encode_hex(proof),
                    "publicValue1": int(plain_tag),
                    "publicValue2": int(reserved),
                    "description": category,
                }
            ],
        )
        _TX_SUBMITTED.labels(self.backend, "create").inc()
        return _RpcTx(self, str(tx_hash), "create")

    async def submit_verification(
        self,
        record_id: str,
        clear_values_encoded: bytes,
        proof: bytes,
    ) -> TxHandle:
        tx_hash = await self._call(
            "verifyDecryption",
            [
                {
                    "from": self._account,
                    "chainId": self._chain_id,
                    "id": record_id,
                    "abiEncodedClearValues": encode_hex(clear_values_encoded),
                    "decryptionProof": encode_hex(proof),
                }
            ],
        )
        _TX_SUBMITTED.labels(self.backend, "verify").inc()
        return _RpcTx(self, str(tx_hash), "verify")
