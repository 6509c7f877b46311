# services/crypto_core/field.py
# BN254 scalar field helpers shared by every hash, commitment and circuit input.
from __future__ import annotations

import secrets

FIELD_MODULUS: int = 21888242871839275222246405745257275088548364400416034343698204186575808495617
FIELD_BYTES: int = 32


def mod_field(value: int) -> int:
    return value % FIELD_MODULUS


def is_field_element(value: int) -> bool:
    return isinstance(value, int) and 0 <= value < FIELD_MODULUS


def require_field(value: int, label: str = "value") -> int:
    if not is_field_element(value):
        raise ValueError(f"{label} is not a valid field element")
    return value


def to_bytes32(value: int) -> bytes:
    """Encode a field element as 32 bytes big-endian. Rejects values >= modulus."""
    require_field(value)
    return value.to_bytes(FIELD_BYTES, "big")


def from_bytes32(data: bytes) -> int:
    if len(data) != FIELD_BYTES:
        raise ValueError(f"expected {FIELD_BYTES} bytes, got {len(data)}")
    value = int.from_bytes(data, "big")
    if value >= FIELD_MODULUS:
        raise ValueError("encoded value exceeds field modulus")
    return value


def random_field() -> int:
    return mod_field(int.from_bytes(secrets.token_bytes(FIELD_BYTES), "big"))


def to_hex32(value: int) -> str:
    return to_bytes32(value).hex()


def from_hex32(text: str) -> int:
    s = text.strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    if len(s) != 2 * FIELD_BYTES:
        raise ValueError("expected 64 hex characters")
    return from_bytes32(bytes.fromhex(s))
