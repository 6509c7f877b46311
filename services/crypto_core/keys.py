# services/crypto_core/keys.py
# Deterministic key material recovered from wallet signatures (never persisted).
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Callable

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from services.crypto_core.babyjub import Point, SUBGROUP_ORDER, mul_base
from services.crypto_core.commitments import identity_commitment, recipient_tag_hash
from services.crypto_core.field import FIELD_MODULUS

SignMessage = Callable[[bytes], bytes]


def view_key_message(owner: str) -> bytes:
    return f"VeilPay:view-key:{owner}".encode("utf-8")


def identity_message(program_id: str, owner: str) -> bytes:
    return f"VeilPay:identity:{program_id}:{owner}".encode("utf-8")


def derive_seed(signature: bytes, info: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"veilpay-v1|" + info,
    )
    return hkdf.derive(signature)


@dataclass(frozen=True)
class ViewKeypair:
    secret: int
    pubkey: Point
    index: int = 0

    @property
    def tag_hash(self) -> int:
        return recipient_tag_hash(self.pubkey)


def view_keypair_from_seed(seed: bytes, index: int = 0) -> ViewKeypair:
    if not 0 <= index <= 0xFFFFFFFF:
        raise ValueError("view key index must fit in u32")
    keyed = hashlib.sha256(seed + index.to_bytes(4, "big")).digest()
    secret = int.from_bytes(keyed, "big") % FIELD_MODULUS % SUBGROUP_ORDER
    if secret == 0:
        secret = 1
    return ViewKeypair(secret=secret, pubkey=mul_base(secret), index=index)


def derive_view_keypair(owner: str, sign_message: SignMessage, index: int = 0) -> ViewKeypair:
    signature = sign_message(view_key_message(owner))
    seed = derive_seed(signature, b"view-key")
    return view_keypair_from_seed(seed, index)


def derive_identity_secret(program_id: str, owner: str, sign_message: SignMessage) -> int:
    signature = sign_message(identity_message(program_id, owner))
    seed = derive_seed(signature, b"identity")
    return int.from_bytes(seed, "big") % FIELD_MODULUS


def derive_identity_commitment(program_id: str, owner: str, sign_message: SignMessage) -> int:
    return identity_commitment(derive_identity_secret(program_id, owner, sign_message))
