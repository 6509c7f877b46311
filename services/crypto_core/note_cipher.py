# services/crypto_core/note_cipher.py
"""
ECIES-style note encryption on Baby Jubjub.

The sender picks an ephemeral scalar r and publishes C1 = Base8*r. The shared
point S = recipient_pub*r = C1*recipient_secret masks the plaintext:

    C2_amount     = amount     + Poseidon(S.x, S.y, 0)
    C2_randomness = randomness + Poseidon(S.x, S.y, 1)

The wire blob is C1.x || C1.y || C2_amount || C2_randomness, 32 bytes each.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from services.crypto_core.babyjub import Point, SUBGROUP_ORDER, mul, mul_base, require_point
from services.crypto_core.commitments import recipient_tag_hash
from services.crypto_core.field import FIELD_BYTES, from_bytes32, mod_field, random_field, require_field, to_bytes32
from services.crypto_core.poseidon import poseidon

CIPHERTEXT_BYTES = 4 * FIELD_BYTES


@dataclass(frozen=True)
class NoteCiphertext:
    c1: Point
    c2_amount: int
    c2_randomness: int
    # only known to the sender
    enc_randomness: Optional[int] = None

    def to_bytes(self) -> bytes:
        return b"".join(
            to_bytes32(v) for v in (self.c1[0], self.c1[1], self.c2_amount, self.c2_randomness)
        )


def _masks(shared: Point) -> Tuple[int, int]:
    sx, sy = shared
    return poseidon([sx, sy, 0]), poseidon([sx, sy, 1])


def _ephemeral_scalar() -> int:
    r = mod_field(int.from_bytes(secrets.token_bytes(32), "big")) % SUBGROUP_ORDER
    return r or 1


def encrypt_note(recipient_pub: Point, amount: int, randomness: int) -> NoteCiphertext:
    require_point(recipient_pub, "recipient view key")
    require_field(amount, "amount")
    require_field(randomness, "randomness")
    r = _ephemeral_scalar()
    c1 = mul_base(r)
    mask_amount, mask_randomness = _masks(mul(recipient_pub, r))
    return NoteCiphertext(
        c1=c1,
        c2_amount=mod_field(amount + mask_amount),
        c2_randomness=mod_field(randomness + mask_randomness),
        enc_randomness=r,
    )


def decrypt_note(secret: int, ciphertext: NoteCiphertext) -> Tuple[int, int]:
    """Return (amount, randomness). A wrong key yields garbage, not an error."""
    require_point(ciphertext.c1, "C1")
    mask_amount, mask_randomness = _masks(mul(ciphertext.c1, secret))
    return (
        mod_field(ciphertext.c2_amount - mask_amount),
        mod_field(ciphertext.c2_randomness - mask_randomness),
    )


def parse_ciphertext(blob: bytes) -> NoteCiphertext:
    if len(blob) != CIPHERTEXT_BYTES:
        raise ValueError(f"note ciphertext must be {CIPHERTEXT_BYTES} bytes, got {len(blob)}")
    words = [from_bytes32(blob[i:i + FIELD_BYTES]) for i in range(0, CIPHERTEXT_BYTES, FIELD_BYTES)]
    return NoteCiphertext(c1=(words[0], words[1]), c2_amount=words[2], c2_randomness=words[3])


@dataclass(frozen=True)
class AmountCiphertext:
    ciphertext: bytes
    payee_tag_hash: int
    randomness: int


def build_amount_ciphertext(payee_view_key: Point, amount: int) -> AmountCiphertext:
    """Encrypt an invoice amount to the payee for an authorization intent."""
    randomness = random_field()
    enc = encrypt_note(payee_view_key, amount, randomness)
    return AmountCiphertext(
        ciphertext=enc.to_bytes(),
        payee_tag_hash=recipient_tag_hash(payee_view_key),
        randomness=randomness,
    )
