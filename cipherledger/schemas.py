# FILE: cipherledger/schemas.py
from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def decode_hex(value: Any) -> bytes:
    """
    Accept bytes, "0x"-prefixed hex or bare hex and return bytes.
    """
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        s = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            return bytes.fromhex(s)
        except ValueError as e:
            raise ValueError(f"not a hex string: {value[:16]!r}") from e
    raise ValueError("expected bytes or hex string")


def encode_hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


# =============================================================================
# Ledger read path
# =============================================================================


class RecordFields(BaseModel):
    """
    Fields of one record as returned by the ledger's record getter.

    Accepts both snake_case and the contract's camelCase names.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    label: str = Field(..., alias="name", description="Plaintext label (not secret)")
    plain_tag: int = Field(0, alias="publicValue1", ge=0, description="Non-secret tag")
    reserved: int = Field(0, alias="publicValue2", ge=0)
    category: str = Field("", alias="description")
    creator: str = Field(..., description="Submitting account")
    created_at: int = Field(..., alias="timestamp", ge=0, description="Ledger seconds")
    verified: bool = Field(False, alias="isVerified")
    decrypted_value: int = Field(0, alias="decryptedValue", ge=0)

    @field_validator("created_at", "plain_tag", "reserved", "decrypted_value", mode="before")
    @classmethod
    def _int_from_hex(cls, v: Any) -> Any:
        # JSON-RPC gateways often hand back uint256 as hex quantities.
        if isinstance(v, str) and v.startswith(("0x", "0X")):
            return int(v, 16)
        return v


# =============================================================================
# Relayer payloads
# =============================================================================


class EncryptedInput(BaseModel):
    """Ciphertext handle plus the input proof that binds it to a contract/account."""

    model_config = ConfigDict(frozen=True)

    ciphertext: bytes
    proof: bytes

    @field_validator("ciphertext", "proof", mode="before")
    @classmethod
    def _bytes(cls, v: Any) -> bytes:
        return decode_hex(v)


class InputProofResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    handles: List[str] = Field(..., min_length=1)
    input_proof: str = Field(..., alias="inputProof")


class PublicDecryptResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    clear_values_encoded: str = Field(..., alias="abiEncodedClearValues")
    decryption_proof: str = Field(..., alias="decryptionProof")


# =============================================================================
# JSON-RPC envelope
# =============================================================================


class JsonRpcError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: Union[int, str]
    message: str = ""
    data: Optional[Any] = None


class JsonRpcResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    jsonrpc: str = "2.0"
    id: Optional[Union[int, str]] = None
    result: Optional[Any] = None
    error: Optional[JsonRpcError] = None


class TxReceipt(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    tx_hash: str = Field(..., alias="transactionHash")
    status: int
    block_number: Optional[int] = Field(None, alias="blockNumber")

    @field_validator("status", "block_number", mode="before")
    @classmethod
    def _int_from_hex(cls, v: Any) -> Any:
        if isinstance(v, str) and v.startswith(("0x", "0X")):
            return int(v, 16)
        return v
