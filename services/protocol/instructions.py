# services/protocol/instructions.py
"""
Instruction builders for the shielded pool program.

Data layout is Anchor's: sha256("global:<name>")[:8] followed by the borsh
encoding of the argument struct (Vec<u8> = u32 LE length + bytes).
"""
from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import List, Optional, Sequence

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from services.protocol import pda

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def _vec(data: bytes) -> bytes:
    return struct.pack("<I", len(data)) + data


def _u64(n: int) -> bytes:
    return struct.pack("<Q", n)


def _u32(n: int) -> bytes:
    return struct.pack("<I", n)


def _u16(n: int) -> bytes:
    return struct.pack("<H", n)


def _fixed(data: bytes, size: int, label: str) -> bytes:
    if len(data) != size:
        raise ValueError(f"{label} must be {size} bytes, got {len(data)}")
    return data


def _w(key: Pubkey, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=key, is_signer=signer, is_writable=True)


def _r(key: Pubkey, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=key, is_signer=signer, is_writable=False)


def derive_ata(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )[0]


def create_ata_idempotent(payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Instruction:
    ata = derive_ata(owner, mint)
    accounts = [
        _w(payer, signer=True),
        _w(ata),
        _r(owner),
        _r(mint),
        _r(SYSTEM_PROGRAM_ID),
        _r(TOKEN_PROGRAM_ID),
    ]
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, bytes([1]), accounts)


@dataclass(frozen=True)
class PoolAccounts:
    """Fixed addresses every spend instruction references for one mint."""

    program_id: Pubkey
    verifier_program_id: Pubkey
    mint: Pubkey
    verifier_key_id: int = 0

    @property
    def config(self) -> Pubkey:
        return pda.derive_config(self.program_id)

    @property
    def vault(self) -> Pubkey:
        return pda.derive_vault(self.program_id, self.mint)

    @property
    def vault_ata(self) -> Pubkey:
        return derive_ata(self.vault, self.mint)

    @property
    def shielded_state(self) -> Pubkey:
        return pda.derive_shielded(self.program_id, self.mint)

    @property
    def identity_registry(self) -> Pubkey:
        return pda.derive_identity_registry(self.program_id)

    @property
    def verifier_key(self) -> Pubkey:
        return pda.derive_verifier_key(self.verifier_program_id, self.verifier_key_id)

    def nullifier_set(self, chunk_index: int) -> Pubkey:
        return pda.derive_nullifier_set(self.program_id, self.mint, chunk_index)

    def authorization(self, intent_hash: bytes) -> Pubkey:
        return pda.derive_authorization(self.program_id, intent_hash)


def deposit(
    pool: PoolAccounts,
    user: Pubkey,
    amount: int,
    ciphertext: bytes,
    commitment: bytes,
    new_root: bytes,
) -> Instruction:
    data = (
        instruction_discriminator("deposit")
        + _u64(amount)
        + _vec(_fixed(ciphertext, 128, "ciphertext"))
        + _vec(_fixed(commitment, 32, "commitment"))
        + _vec(_fixed(new_root, 32, "new_root"))
    )
    accounts = [
        _r(pool.config),
        _w(pool.vault),
        _w(pool.vault_ata),
        _w(pool.shielded_state),
        _r(user, signer=True),
        _w(derive_ata(user, pool.mint)),
        _r(pool.mint),
        _r(TOKEN_PROGRAM_ID),
    ]
    return Instruction(pool.program_id, data, accounts)


def _spend_args(amount: int, proof: bytes, public_inputs: bytes, relayer_fee_bps: int, new_root: bytes) -> bytes:
    return (
        _u64(amount)
        + _vec(proof)
        + _vec(public_inputs)
        + _u16(relayer_fee_bps)
        + _vec(_fixed(new_root, 32, "new_root"))
    )


def _nullifier_metas(pool: PoolAccounts, chunk_indexes: Sequence[int]) -> List[AccountMeta]:
    if not chunk_indexes:
        raise ValueError("at least one nullifier chunk is required")
    return [_w(pool.nullifier_set(i)) for i in chunk_indexes]


def _payout_accounts(
    pool: PoolAccounts,
    chunk_indexes: Sequence[int],
    destination_ata: Pubkey,
    relayer_fee_ata: Optional[Pubkey],
    shielded_writable: bool,
) -> List[AccountMeta]:
    nullifier_metas = _nullifier_metas(pool, chunk_indexes)
    return [
        _w(pool.vault),
        _w(pool.vault_ata),
        _w(pool.shielded_state) if shielded_writable else _r(pool.shielded_state),
        _r(pool.identity_registry),
        nullifier_metas[0],
        _w(destination_ata),
        # Anchor reads the program id in an Option<Account> slot as None
        _w(relayer_fee_ata) if relayer_fee_ata else _r(pool.program_id),
        _r(pool.verifier_program_id),
        _r(pool.verifier_key),
        _r(pool.mint),
        _r(TOKEN_PROGRAM_ID),
        *nullifier_metas[1:],
    ]


def withdraw(
    pool: PoolAccounts,
    recipient_ata: Pubkey,
    amount: int,
    proof: bytes,
    public_inputs: bytes,
    relayer_fee_bps: int,
    new_root: bytes,
    chunk_indexes: Sequence[int],
    relayer_fee_ata: Optional[Pubkey] = None,
) -> Instruction:
    data = instruction_discriminator("withdraw") + _spend_args(amount, proof, public_inputs, relayer_fee_bps, new_root)
    accounts = [_r(pool.config)] + _payout_accounts(pool, chunk_indexes, recipient_ata, relayer_fee_ata, True)
    return Instruction(pool.program_id, data, accounts)


def external_transfer(
    pool: PoolAccounts,
    destination_ata: Pubkey,
    amount: int,
    proof: bytes,
    public_inputs: bytes,
    relayer_fee_bps: int,
    new_root: bytes,
    chunk_indexes: Sequence[int],
    relayer_fee_ata: Optional[Pubkey] = None,
) -> Instruction:
    data = instruction_discriminator("external_transfer") + _spend_args(
        amount, proof, public_inputs, relayer_fee_bps, new_root
    )
    accounts = [_r(pool.config)] + _payout_accounts(pool, chunk_indexes, destination_ata, relayer_fee_ata, True)
    return Instruction(pool.program_id, data, accounts)


def internal_transfer(
    pool: PoolAccounts,
    proof: bytes,
    public_inputs: bytes,
    new_root: bytes,
    chunk_indexes: Sequence[int],
) -> Instruction:
    data = (
        instruction_discriminator("internal_transfer")
        + _vec(proof)
        + _vec(public_inputs)
        + _vec(_fixed(new_root, 32, "new_root"))
    )
    nullifier_metas = _nullifier_metas(pool, chunk_indexes)
    accounts = [
        _r(pool.config),
        _w(pool.shielded_state),
        _r(pool.identity_registry),
        nullifier_metas[0],
        _r(pool.verifier_program_id),
        _r(pool.verifier_key),
        _r(pool.mint),
        *nullifier_metas[1:],
    ]
    return Instruction(pool.program_id, data, accounts)


def settle_authorization(
    pool: PoolAccounts,
    intent_hash: bytes,
    recipient_ata: Pubkey,
    amount: int,
    proof: bytes,
    public_inputs: bytes,
    relayer_fee_bps: int,
    new_root: bytes,
    chunk_indexes: Sequence[int],
    relayer_fee_ata: Optional[Pubkey] = None,
) -> Instruction:
    data = instruction_discriminator("settle_authorization") + _spend_args(
        amount, proof, public_inputs, relayer_fee_bps, new_root
    )
    accounts = [
        _r(pool.config),
        _w(pool.authorization(intent_hash)),
    ] + _payout_accounts(pool, chunk_indexes, recipient_ata, relayer_fee_ata, True)
    return Instruction(pool.program_id, data, accounts)


def create_authorization(
    pool: PoolAccounts,
    payer: Pubkey,
    intent_hash: bytes,
    payee_tag_hash: bytes,
    amount_ciphertext: bytes,
    expiry_slot: int,
    circuit_id: int,
    proof_hash: bytes,
    relayer_pubkey: Optional[Pubkey] = None,
) -> Instruction:
    data = (
        instruction_discriminator("create_authorization")
        + _vec(_fixed(intent_hash, 32, "intent_hash"))
        + _vec(_fixed(payee_tag_hash, 32, "payee_tag_hash"))
        + bytes(pool.mint)
        + _vec(_fixed(amount_ciphertext, 128, "amount_ciphertext"))
        + _u64(expiry_slot)
        + _u32(circuit_id)
        + _vec(_fixed(proof_hash, 32, "proof_hash"))
        + bytes(relayer_pubkey or Pubkey.default())
    )
    accounts = [
        _r(pool.config),
        _w(pool.authorization(intent_hash)),
        _w(payer, signer=True),
        _r(SYSTEM_PROGRAM_ID),
    ]
    return Instruction(pool.program_id, data, accounts)


def initialize_nullifier_chunk(pool: PoolAccounts, payer: Pubkey, chunk_index: int) -> Instruction:
    data = instruction_discriminator("initialize_nullifier_chunk") + _u32(chunk_index)
    accounts = [
        _r(pool.config),
        _w(pool.nullifier_set(chunk_index)),
        _w(payer, signer=True),
        _r(pool.mint),
        _r(SYSTEM_PROGRAM_ID),
    ]
    return Instruction(pool.program_id, data, accounts)


def register_identity(program_id: Pubkey, payer: Pubkey, commitment: bytes, new_root: bytes) -> Instruction:
    data = (
        instruction_discriminator("register_identity")
        + _vec(_fixed(commitment, 32, "commitment"))
        + _vec(_fixed(new_root, 32, "new_root"))
    )
    accounts = [
        _w(pda.derive_identity_registry(program_id)),
        _w(payer, signer=True),
    ]
    return Instruction(program_id, data, accounts)
