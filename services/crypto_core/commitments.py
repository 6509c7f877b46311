# services/crypto_core/commitments.py
from __future__ import annotations

from services.crypto_core.babyjub import Point, require_point
from services.crypto_core.field import from_hex32, to_hex32
from services.crypto_core.poseidon import poseidon

U64_MAX = (1 << 64) - 1


def note_commitment(amount: int, randomness: int, recipient_tag_hash: int) -> int:
    """Poseidon(amount, randomness, recipient_tag_hash)."""
    if not 0 <= amount <= U64_MAX:
        raise ValueError("amount must fit in u64")
    return poseidon([amount, randomness, recipient_tag_hash])


def nullifier(sender_secret: int, leaf_index: int) -> int:
    if leaf_index < 0:
        raise ValueError("leaf index must be non-negative")
    return poseidon([sender_secret, leaf_index])


def identity_commitment(identity_secret: int) -> int:
    return poseidon([identity_secret])


def recipient_tag_hash(view_pubkey: Point) -> int:
    return poseidon([view_pubkey[0], view_pubkey[1]])


def serialize_view_key(pubkey: Point) -> str:
    """'<x hex64>:<y hex64>' shared out of band so senders can address notes."""
    return f"{to_hex32(pubkey[0])}:{to_hex32(pubkey[1])}"


def parse_view_key(text: str) -> Point:
    parts = text.strip().split(":")
    if len(parts) != 2:
        raise ValueError('Invalid view key format. Expected "<x>:<y>" hex.')
    try:
        point = (from_hex32(parts[0]), from_hex32(parts[1]))
    except ValueError as e:
        raise ValueError(f"Invalid view key: {e}") from e
    return require_point(point, "view key")
