# services/protocol/accounts.py
# Decoders for the pool program's Anchor accounts (8-byte discriminator + borsh body).
from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import List, Tuple

from solders.pubkey import Pubkey

NULLIFIER_BITS = 8192
NULLIFIER_BYTES = NULLIFIER_BITS // 8

AUTH_STATUS_OPEN = 0
AUTH_STATUS_SETTLED = 1


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


class BorshReader:
    """Sequential reader over borsh-encoded bytes; short reads raise ValueError."""

    def __init__(self, data: bytes, label: str, pos: int = 0):
        self.data = data
        self.pos = pos
        self.label = label

    def take(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self.data):
            raise ValueError(f"{self.label} data truncated")
        out = self.data[self.pos:end]
        self.pos = end
        return out

    def unpack(self, fmt: str) -> Tuple:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))

    def u8(self) -> int:
        return self.unpack("<B")[0]

    def u32(self) -> int:
        return self.unpack("<I")[0]

    def u64(self) -> int:
        return self.unpack("<Q")[0]

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self.take(32))

    def vec(self) -> bytes:
        return self.take(self.u32())


class _Reader(BorshReader):
    def __init__(self, data: bytes, name: str):
        if len(data) < 8 or data[:8] != account_discriminator(name):
            raise ValueError(f"account data is not a {name}")
        super().__init__(data, f"{name} account", 8)


@dataclass(frozen=True)
class ShieldedState:
    mint: Pubkey
    merkle_root: bytes
    root_history: List[bytes]
    root_history_index: int
    commitment_count: int
    circuit_id: int
    version: int
    bump: int

    @property
    def root(self) -> int:
        return int.from_bytes(self.merkle_root, "big")

    @classmethod
    def decode(cls, data: bytes) -> "ShieldedState":
        r = _Reader(data, "ShieldedState")
        mint = r.pubkey()
        root = r.take(32)
        history = [r.take(32) for _ in range(r.u32())]
        return cls(
            mint=mint,
            merkle_root=root,
            root_history=history,
            root_history_index=r.u32(),
            commitment_count=r.u64(),
            circuit_id=r.u32(),
            version=r.u32(),
            bump=r.u8(),
        )


@dataclass(frozen=True)
class IdentityRegistry:
    merkle_root: bytes
    commitment_count: int
    bump: int

    @property
    def root(self) -> int:
        return int.from_bytes(self.merkle_root, "big")

    @classmethod
    def decode(cls, data: bytes) -> "IdentityRegistry":
        r = _Reader(data, "IdentityRegistry")
        return cls(merkle_root=r.take(32), commitment_count=r.u64(), bump=r.u8())


@dataclass(frozen=True)
class NullifierSet:
    mint: Pubkey
    chunk_index: int
    bitset: bytes
    count: int
    bump: int

    def is_set(self, bit_index: int) -> bool:
        return bool(self.bitset[bit_index // 8] & (1 << (bit_index % 8)))

    @classmethod
    def decode(cls, data: bytes) -> "NullifierSet":
        r = _Reader(data, "NullifierSet")
        return cls(mint=r.pubkey(), chunk_index=r.u32(), bitset=r.take(NULLIFIER_BYTES), count=r.u32(), bump=r.u8())


@dataclass(frozen=True)
class Authorization:
    intent_hash: bytes
    payee_tag_hash: bytes
    mint: Pubkey
    amount_ciphertext: bytes
    expiry_slot: int
    circuit_id: int
    proof_hash: bytes
    payer: Pubkey
    relayer_pubkey: Pubkey
    status: int
    bump: int

    @property
    def settled(self) -> bool:
        return self.status == AUTH_STATUS_SETTLED

    @classmethod
    def decode(cls, data: bytes) -> "Authorization":
        r = _Reader(data, "Authorization")
        return cls(
            intent_hash=r.take(32),
            payee_tag_hash=r.take(32),
            mint=r.pubkey(),
            amount_ciphertext=r.take(128),
            expiry_slot=r.u64(),
            circuit_id=r.u32(),
            proof_hash=r.take(32),
            payer=r.pubkey(),
            relayer_pubkey=r.pubkey(),
            status=r.u8(),
            bump=r.u8(),
        )
