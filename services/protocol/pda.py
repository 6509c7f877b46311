# services/protocol/pda.py
# Program-derived addresses of the shielded pool program.
from __future__ import annotations

import struct

from solders.pubkey import Pubkey


def _u32le(n: int) -> bytes:
    return struct.pack("<I", n)


def derive_config(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"config", bytes(program_id)], program_id)[0]


def derive_vk_registry(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"vk_registry"], program_id)[0]


def derive_vault(program_id: Pubkey, mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"vault", bytes(mint)], program_id)[0]


def derive_shielded(program_id: Pubkey, mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"shielded", bytes(mint)], program_id)[0]


def derive_identity_registry(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"identity_registry"], program_id)[0]


def derive_identity_member(program_id: Pubkey, owner: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"identity_member", bytes(owner)], program_id)[0]


def derive_nullifier_set(program_id: Pubkey, mint: Pubkey, chunk_index: int) -> Pubkey:
    return Pubkey.find_program_address([b"nullifier_set", bytes(mint), _u32le(chunk_index)], program_id)[0]


def derive_authorization(program_id: Pubkey, intent_hash: bytes) -> Pubkey:
    if len(intent_hash) != 32:
        raise ValueError("intent hash must be 32 bytes")
    return Pubkey.find_program_address([b"auth", intent_hash], program_id)[0]


def derive_verifier_key(verifier_program_id: Pubkey, key_id: int) -> Pubkey:
    return Pubkey.find_program_address([b"verifier_key", _u32le(key_id)], verifier_program_id)[0]
