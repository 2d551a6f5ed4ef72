# FILE: cipherledger/kv.py
from __future__ import annotations

"""
Canonical key/value hashing.

Used for:
  - the settings fingerprint (Settings.config_hash);
  - the binding digests the local coprocessor signs for input proofs and
    decryption proofs.

Encoding: keys sorted as strings, each value prefixed with a short type
tag so that "1", 1 and True never collide. An optional key switches the
digest to HMAC. Labels give domain separation between uses.
"""

import hashlib
import hmac
import json
import os
import struct
from typing import Any, Callable, Iterable, Mapping, Optional


def _resolve_digest(alg: str) -> Callable[..., Any]:
    """
    "blake3" is accepted as an alias for SHA-256 so call sites can name the
    preferred algorithm without requiring the blake3 wheel here.
    """
    name = (alg or "").lower()
    if name in ("sha256", "sha-256", "blake3", ""):
        return hashlib.sha256
    if name in ("blake2s", "b2s"):
        return hashlib.blake2s
    raise ValueError(f"Unsupported digest algorithm for kv hashing: {alg!r}")


# Keys that would carry decrypted material into a digest.
_FORBIDDEN_KV_KEYS = frozenset(
    {"plaintext", "cleartext", "clear_value", "decrypted_value", "secret"}
)
_FORBID_CLEARTEXT = os.environ.get("CIPHERLEDGER_KV_FORBID_CLEARTEXT", "1") == "1"
_MAX_APPROX_BYTES = int(os.environ.get("CIPHERLEDGER_KV_MAX_BYTES", "8192"))

_MIN_KEY_BYTES = 16


class RollingHasher:
    """
    Streaming digest with a label prefix and optional HMAC key.
    """

    def __init__(self, alg: str = "blake3", ctx: str = "", *, key: Optional[bytes] = None, label: str = ""):
        digestmod = _resolve_digest(alg)
        if key is None:
            self._h = digestmod()
        else:
            if not isinstance(key, (bytes, bytearray)):
                raise TypeError("HMAC key must be bytes")
            if len(key) < _MIN_KEY_BYTES:
                raise ValueError(f"HMAC key shorter than {_MIN_KEY_BYTES} bytes")
            self._h = hmac.new(bytes(key), digestmod=digestmod)
        if label:
            self._h.update(b"kv.label:" + label.encode("utf-8") + b"\x00")
        if ctx:
            self._h.update(ctx.encode("utf-8"))

    def update(self, data: bytes) -> None:
        if data:
            self._h.update(data)

    def digest(self) -> bytes:
        return self._h.digest()

    def hex(self) -> str:
        return self._h.hexdigest()


def _tagged(value: Any) -> bytes:
    """Type-tagged canonical encoding of one value."""
    if value is None:
        return b"t:none;"
    if isinstance(value, bool):
        return b"t:bool;" + (b"1" if value else b"0") + b";"
    if isinstance(value, int):
        return b"t:int;" + str(value).encode("ascii") + b";"
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise ValueError("NaN or infinite values cannot be hashed")
        return b"t:float;" + struct.pack("!d", value) + b";"
    if isinstance(value, (bytes, bytearray)):
        return b"t:bytes;" + bytes(value).hex().encode("ascii") + b";"
    if isinstance(value, str):
        return b"t:str;" + value.encode("utf-8") + b";"
    payload = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return b"t:json;" + payload.encode("utf-8") + b";"


def _check_mapping(mapping: Mapping[str, Any]) -> None:
    if _FORBID_CLEARTEXT:
        bad = [str(k) for k in mapping if str(k).lower() in _FORBIDDEN_KV_KEYS]
        if bad:
            raise ValueError(f"canonical_kv_hash: forbidden key in mapping: {bad[0]!r}")
    size = 0
    for k, v in mapping.items():
        size += len(str(k))
        if isinstance(v, (bytes, bytearray, str)):
            size += len(v)
        else:
            size += len(repr(v))
    if size > _MAX_APPROX_BYTES:
        raise ValueError("canonical_kv_hash: mapping too large")


def _hasher_for(mapping: Mapping[str, Any], *, ctx: str, label: str, key: Optional[bytes], alg: str) -> RollingHasher:
    _check_mapping(mapping)
    rh = RollingHasher(alg=alg, ctx=ctx, key=key, label=label)
    for k in sorted(mapping, key=str):
        rh.update(b"k:" + str(k).encode("utf-8") + b";v:" + _tagged(mapping[k]) + b";")
    return rh


def canonical_kv_hash(
    mapping: Mapping[str, Any],
    *,
    ctx: str = "",
    label: str = "kv",
    key: Optional[bytes] = None,
    alg: str = "blake3",
) -> str:
    """
    Hex digest of `mapping`, independent of insertion order.

    Raises ValueError for cleartext-like keys or oversized mappings.
    """
    return _hasher_for(mapping, ctx=ctx, label=label, key=key, alg=alg).hex()


def canonical_kv_digest(
    mapping: Mapping[str, Any],
    *,
    ctx: str = "",
    label: str = "kv",
    key: Optional[bytes] = None,
    alg: str = "blake3",
) -> bytes:
    return _hasher_for(mapping, ctx=ctx, label=label, key=key, alg=alg).digest()


# ---- Proof bindings ----


def input_binding_hash(
    *,
    context_address: str,
    recipient: str,
    handle: bytes,
    key: Optional[bytes] = None,
) -> bytes:
    """
    Digest binding an encrypted input handle to the contract it targets and
    the account allowed to submit it. Addresses compare case-insensitively.
    """
    mapping = {
        "context": str(context_address).lower(),
        "recipient": str(recipient).lower(),
        "handle": bytes(handle),
    }
    return canonical_kv_digest(mapping, label="input_proof", key=key)


def decryption_binding_hash(
    *,
    handles: Iterable[bytes],
    clear_values_encoded: bytes,
    key: Optional[bytes] = None,
) -> bytes:
    """Digest binding a set of handles to their ABI-encoded clear values."""
    mapping = {
        "handles": [bytes(h).hex() for h in handles],
        "encoded": bytes(clear_values_encoded),
    }
    return canonical_kv_digest(mapping, label="decryption_proof", key=key)
