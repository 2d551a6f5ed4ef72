# FILE: cipherledger/crypto.py
from __future__ import annotations

"""
Encryption / verified-decryption adapters.

The scheme's mathematics and proof system live in external services; this
module only speaks their contracts:

  EncryptionProvider.encrypt(context, recipient, value) -> EncryptedInput
  DecryptionService.request_verified_decryption(handles, context, submit)

Two families of implementations:
  - Relayer* : HTTP adapters for a relayer that fronts the real coprocessor.
  - Local*   : in-process stand-ins backed by LocalCoprocessor, used by the
               in-memory backend and the tests. They keep handle -> value in
               memory and sign proofs with a keyed MAC; they are NOT
               encryption and must never be wired to real data.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Sequence, Tuple

import httpx
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from prometheus_client import Counter, Histogram
from pydantic import ValidationError

from .errors import (
    DecryptionUnavailable,
    EncryptionUnavailable,
    InvalidInput,
    TransportFailure,
)
from .kv import decryption_binding_hash, input_binding_hash
from .schemas import EncryptedInput, InputProofResponse, PublicDecryptResponse, decode_hex, encode_hex

logger = logging.getLogger(__name__)

try:
    import blake3  # type: ignore[import]
except Exception:
    blake3 = None  # type: ignore[assignment]


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

_CRYPTO_LATENCY = Histogram(
    "cipherledger_crypto_call_latency_seconds",
    "Latency of encryption / decryption service calls (seconds)",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
    labelnames=("op", "ok"),
)

_CRYPTO_UNAVAILABLE = Counter(
    "cipherledger_crypto_unavailable_total",
    "Encryption / decryption service reported not ready",
    labelnames=("op",),
)


# ---------------------------------------------------------------------------
# Hash / MAC policy
# ---------------------------------------------------------------------------

HashAlgo = Literal["BLAKE3_256", "BLAKE2B_256", "SHA2_256"]

HashLabel = Literal["input_proof", "decryption_proof", "handle", "kdf"]

HASH_DOMAIN_PREFIX = b"cipherledger:v1:"


class CryptoError(Exception):
    """Base crypto error (local coprocessor misuse)."""


def _domain_tag(label: str) -> bytes:
    if any(ch.isspace() for ch in label) or ":" in label:
        raise CryptoError(f"Unsupported hash label: {label!r}")
    return HASH_DOMAIN_PREFIX + label.encode("utf-8")


@dataclass(frozen=True)
class HashPolicy:
    hash_algo: HashAlgo
    digest_size: int = 32
    reject_on_fallback: bool = False

    @classmethod
    def default(cls) -> "HashPolicy":
        return cls(hash_algo="BLAKE3_256" if blake3 is not None else "BLAKE2B_256")

    @classmethod
    def fips(cls) -> "HashPolicy":
        return cls(hash_algo="SHA2_256", reject_on_fallback=True)


class HashEngine:
    def __init__(self, policy: Optional[HashPolicy] = None) -> None:
        self._policy = policy or HashPolicy.default()

    @property
    def policy(self) -> HashPolicy:
        return self._policy

    def _hash_bytes(self, payload: bytes) -> bytes:
        algo = self._policy.hash_algo

        if algo == "BLAKE3_256":
            if blake3 is not None:
                return blake3.blake3(payload).digest()
            if self._policy.reject_on_fallback:
                raise CryptoError("BLAKE3_256 requested but blake3 is not available")
            logger.warning("Falling back from BLAKE3_256 to BLAKE2B_256")
            algo = "BLAKE2B_256"

        if algo == "BLAKE2B_256":
            return hashlib.blake2b(payload, digest_size=self._policy.digest_size).digest()
        if algo == "SHA2_256":
            return hashlib.sha256(payload).digest()

        raise CryptoError(f"Unsupported hash algorithm: {algo}")

    def digest(self, data: bytes, *, label: HashLabel) -> bytes:
        return self._hash_bytes(_domain_tag(label) + data)

    def mac(self, key: bytes, data: bytes, *, label: HashLabel) -> bytes:
        payload = _domain_tag(label) + data
        if self._policy.hash_algo == "SHA2_256":
            return hmac.new(key, payload, hashlib.sha256).digest()
        if blake3 is not None and self._policy.hash_algo == "BLAKE3_256":
            return blake3.blake3(payload, key=key[:32].ljust(32, b"\x00")).digest()
        return hashlib.blake2b(payload, key=key[:64], digest_size=self._policy.digest_size).digest()


def derive_key(master: bytes, *, label: HashLabel, length: int = 32) -> bytes:
    """HKDF-SHA256 sub-key derivation with a domain-separated info string."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=None,
        info=_domain_tag(label),
    )
    return hkdf.derive(master)


# ---------------------------------------------------------------------------
# ABI helpers (uint256 words)
# ---------------------------------------------------------------------------

_WORD = 32


def encode_clear_values(values: Sequence[int]) -> bytes:
    """ABI-encode a sequence of unsigned integers as consecutive uint256 words."""
    out = bytearray()
    for v in values:
        iv = int(v)
        if iv < 0 or iv >= 2**256:
            raise ValueError("clear value out of uint256 range")
        out += iv.to_bytes(_WORD, "big")
    return bytes(out)


def decode_clear_values(encoded: bytes) -> List[int]:
    if not encoded or len(encoded) % _WORD:
        raise ValueError("encoded clear values must be a non-empty multiple of 32 bytes")
    return [
        int.from_bytes(encoded[i : i + _WORD], "big")
        for i in range(0, len(encoded), _WORD)
    ]


# ---------------------------------------------------------------------------
# Service contracts
# ---------------------------------------------------------------------------

# submit(clear_values_encoded, decryption_proof) -> awaitable TxHandle
AttestationSubmitter = Callable[[bytes, bytes], Awaitable[Any]]


class EncryptionProvider:
    """
    Turns a plaintext unsigned value into a ciphertext handle plus an input
    proof bound to (context_address, recipient).
    """

    @property
    def initialized(self) -> bool:
        raise NotImplementedError

    async def initialize(self) -> None:
        raise NotImplementedError

    async def encrypt(self, context_address: str, recipient: str, value: int) -> EncryptedInput:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class DecryptionService:
    """
    Produces (clear_values_encoded, decryption_proof) for a set of handles
    and drives the on-ledger attestation through the caller's `submit`.
    Returns whatever `submit` returned (a TxHandle).
    """

    async def request_verified_decryption(
        self,
        handles: Sequence[bytes],
        context_address: str,
        submit: AttestationSubmitter,
    ) -> Any:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def _check_value(value: int) -> int:
    iv = int(value)
    if iv < 0 or iv >= 2**64:
        raise InvalidInput("value out of range for an encrypted uint64")
    return iv


# ---------------------------------------------------------------------------
# Local coprocessor (dev / tests)
# ---------------------------------------------------------------------------


class LocalCoprocessor:
    """
    In-process stand-in for the encryption coprocessor and the decryption
    oracle. Values are stored in the clear in memory.

    `ready` toggles service availability; `decrypt_calls` counts oracle
    requests so callers can assert the oracle was (not) contacted.
    """

    def __init__(self, *, master_key: Optional[bytes] = None, engine: Optional[HashEngine] = None):
        master = master_key or secrets.token_bytes(32)
        self._engine = engine or HashEngine()
        self._input_key = derive_key(master, label="input_proof")
        self._decrypt_key = derive_key(master, label="decryption_proof")
        self._values: Dict[bytes, int] = {}
        self._lock = threading.Lock()
        self.ready = True
        self.decrypt_calls = 0

    def encrypt(self, context_address: str, recipient: str, value: int) -> EncryptedInput:
        if not self.ready:
            raise EncryptionUnavailable("local coprocessor not ready")
        iv = _check_value(value)
        handle = self._engine.digest(secrets.token_bytes(32), label="handle")
        with self._lock:
            self._values[handle] = iv
        binding = input_binding_hash(context_address=context_address, recipient=recipient, handle=handle)
        proof = self._engine.mac(self._input_key, binding, label="input_proof")
        return EncryptedInput(ciphertext=handle, proof=proof)

    def verify_input(self, ciphertext: bytes, proof: bytes, context_address: str, sender: str) -> bool:
        with self._lock:
            if ciphertext not in self._values:
                return False
        binding = input_binding_hash(context_address=context_address, recipient=sender, handle=ciphertext)
        expected = self._engine.mac(self._input_key, binding, label="input_proof")
        return hmac.compare_digest(expected, proof)

    def decrypt(self, handles: Sequence[bytes]) -> Tuple[bytes, bytes]:
        if not self.ready:
            raise DecryptionUnavailable("local coprocessor not ready")
        self.decrypt_calls += 1
        with self._lock:
            try:
                values = [self._values[bytes(h)] for h in handles]
            except KeyError as e:
                raise CryptoError("unknown ciphertext handle") from e
        encoded = encode_clear_values(values)
        binding = decryption_binding_hash(handles=handles, clear_values_encoded=encoded)
        proof = self._engine.mac(self._decrypt_key, binding, label="decryption_proof")
        return encoded, proof

    def verify_decryption(self, handles: Sequence[bytes], encoded: bytes, proof: bytes) -> bool:
        binding = decryption_binding_hash(handles=handles, clear_values_encoded=encoded)
        expected = self._engine.mac(self._decrypt_key, binding, label="decryption_proof")
        return hmac.compare_digest(expected, proof)


class LocalEncryptionProvider(EncryptionProvider):
    def __init__(self, coprocessor: LocalCoprocessor) -> None:
        self._cop = coprocessor
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if not self._cop.ready:
            raise EncryptionUnavailable("local coprocessor not ready")
        self._initialized = True

    async def encrypt(self, context_address: str, recipient: str, value: int) -> EncryptedInput:
        await asyncio.sleep(0)
        return self._cop.encrypt(context_address, recipient, value)


class LocalDecryptionService(DecryptionService):
    def __init__(self, coprocessor: LocalCoprocessor) -> None:
        self._cop = coprocessor

    async def request_verified_decryption(
        self,
        handles: Sequence[bytes],
        context_address: str,
        submit: AttestationSubmitter,
    ) -> Any:
        await asyncio.sleep(0)
        encoded, proof = self._cop.decrypt(handles)
        return await submit(encoded, proof)


# ---------------------------------------------------------------------------
# Relayer (HTTP) adapters
# ---------------------------------------------------------------------------


def _raise_for_service(resp: httpx.Response, *, op: str) -> None:
    if resp.status_code == 503:
        _CRYPTO_UNAVAILABLE.labels(op).inc()
        if op == "encrypt":
            raise EncryptionUnavailable("relayer not ready")
        raise DecryptionUnavailable("relayer not ready")
    if resp.status_code >= 400:
        raise TransportFailure(f"relayer {op} failed with HTTP {resp.status_code}")


class _RelayerBase:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_s,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class RelayerEncryptionProvider(_RelayerBase, EncryptionProvider):
    """
    Relayer endpoints:
      GET  /v1/keyurl       -> 200 once public key material is published
      POST /v1/input-proof  -> {"handles": ["0x.."], "inputProof": "0x.."}
    """

    def __init__(self, base_url: str, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        resp = await self._client.get("/v1/keyurl")
        _raise_for_service(resp, op="encrypt")
        self._initialized = True

    async def encrypt(self, context_address: str, recipient: str, value: int) -> EncryptedInput:
        iv = _check_value(value)
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        ok = "no"
        try:
            resp = await self._client.post(
                "/v1/input-proof",
                json={
                    "contractAddress": context_address,
                    "userAddress": recipient,
                    "values": [iv],
                    "bits": 64,
                },
            )
            _raise_for_service(resp, op="encrypt")
            try:
                body = InputProofResponse.model_validate(resp.json())
                out = EncryptedInput(ciphertext=body.handles[0], proof=body.input_proof)
            except (ValueError, ValidationError) as e:
                raise TransportFailure("malformed relayer input-proof response") from e
            ok = "yes"
            return out
        finally:
            _CRYPTO_LATENCY.labels("encrypt", ok).observe(loop.time() - t0)


class RelayerDecryptionService(_RelayerBase, DecryptionService):
    """
    Relayer endpoint:
      POST /v1/public-decrypt {"handles": [...], "contractAddress": ..}
        -> {"abiEncodedClearValues": "0x..", "decryptionProof": "0x.."}
    """

    async def request_verified_decryption(
        self,
        handles: Sequence[bytes],
        context_address: str,
        submit: AttestationSubmitter,
    ) -> Any:
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        ok = "no"
        try:
            resp = await self._client.post(
                "/v1/public-decrypt",
                json={
                    "handles": [encode_hex(h) for h in handles],
                    "contractAddress": context_address,
                },
            )
            _raise_for_service(resp, op="decrypt")
            try:
                body = PublicDecryptResponse.model_validate(resp.json())
                encoded = decode_hex(body.clear_values_encoded)
                proof = decode_hex(body.decryption_proof)
            except (ValueError, ValidationError) as e:
                raise TransportFailure("malformed relayer decryption response") from e
            ok = "yes"
        finally:
            _CRYPTO_LATENCY.labels("decrypt", ok).observe(loop.time() - t0)
        return await submit(encoded, proof)
