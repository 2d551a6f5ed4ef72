# cipherledger/tests/test_crypto.py
import pytest

from cipherledger.crypto import (
    CryptoError,
    HashEngine,
    HashPolicy,
    LocalCoprocessor,
    decode_clear_values,
    derive_key,
    encode_clear_values,
)
from cipherledger.errors import DecryptionUnavailable, EncryptionUnavailable, InvalidInput
from cipherledger.kv import canonical_kv_hash


def test_clear_values_are_uint256_words():
    enc = encode_clear_values([0, 4, 2**64])
    assert len(enc) == 96
    assert enc[:32] == b"\x00" * 32
    assert enc[63] == 4
    assert decode_clear_values(enc) == [0, 4, 2**64]

    with pytest.raises(ValueError):
        encode_clear_values([-1])
    with pytest.raises(ValueError):
        decode_clear_values(b"\x00" * 31)


def test_input_proof_binds_contract_and_sender():
    cop = LocalCoprocessor(master_key=b"\x09" * 32)
    enc = cop.encrypt("0xC1E", "0xABC", 42)

    assert cop.verify_input(enc.ciphertext, enc.proof, "0xc1e", "0xabc")
    assert not cop.verify_input(enc.ciphertext, enc.proof, "0xc1e", "0xdef")
    assert not cop.verify_input(enc.ciphertext, enc.proof, "0xbad", "0xabc")
    assert not cop.verify_input(b"\x00" * 32, enc.proof, "0xc1e", "0xabc")


def test_decryption_proof_binds_values():
    cop = LocalCoprocessor(master_key=b"\x09" * 32)
    enc = cop.encrypt("0xc1e", "0xabc", 42)
    encoded, proof = cop.decrypt([enc.ciphertext])

    assert decode_clear_values(encoded) == [42]
    assert cop.decrypt_calls == 1
    assert cop.verify_decryption([enc.ciphertext], encoded, proof)
    assert not cop.verify_decryption([enc.ciphertext], encode_clear_values([43]), proof)


def test_coprocessor_not_ready():
    cop = LocalCoprocessor()
    cop.ready = False
    with pytest.raises(EncryptionUnavailable):
        cop.encrypt("0xc1e", "0xabc", 1)
    with pytest.raises(DecryptionUnavailable):
        cop.decrypt([b"\x00" * 32])


def test_value_range_is_checked():
    cop = LocalCoprocessor()
    with pytest.raises(InvalidInput):
        cop.encrypt("0xc1e", "0xabc", 2**64)
    with pytest.raises(CryptoError):
        cop.decrypt([b"\x11" * 32])


def test_hash_engine_domain_separation():
    eng = HashEngine(HashPolicy.fips())
    assert eng.digest(b"x", label="handle") != eng.digest(b"x", label="kdf")
    assert len(eng.mac(b"k" * 32, b"x", label="input_proof")) == 32
    with pytest.raises(CryptoError):
        eng.digest(b"x", label="bad label")  # type: ignore[arg-type]


def test_derive_key_is_deterministic_per_label():
    master = b"\x05" * 32
    assert derive_key(master, label="input_proof") == derive_key(master, label="input_proof")
    assert derive_key(master, label="input_proof") != derive_key(master, label="decryption_proof")


def test_canonical_kv_hash_order_independent():
    a = canonical_kv_hash({"x": 1, "y": "two", "z": b"\x03"})
    b = canonical_kv_hash({"z": b"\x03", "y": "two", "x": 1})
    assert a == b
    assert a != canonical_kv_hash({"x": 1, "y": "two", "z": b"\x04"})
    with pytest.raises(ValueError):
        canonical_kv_hash({"plaintext": "nope"})
