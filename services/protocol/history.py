# services/protocol/history.py
"""
Pool and identity state rebuilt from the program's transaction history.

On-chain accounts only keep roots and counts; the leaves live in instruction
data. Walking an account's signatures oldest-first and decoding every
program instruction that touches it reproduces the ordered leaf list:

    deposit                  -> 1 leaf (commitment + ciphertext)
    withdraw, external_transfer,
    settle_authorization,
    internal_transfer        -> 1 leaf per enabled output commitment, slot order
    register_identity        -> 1 identity leaf

Spend outputs carry no ciphertext in instruction data; when the program logs
a NoteOutputEvent ("Program data:" line) its ciphertext is attached to the
matching leaf.
"""
from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import base58
from solders.pubkey import Pubkey

from services.api.logging_config import get_logger
from services.crypto_core.field import from_bytes32
from services.protocol import instructions as ix
from services.protocol.accounts import BorshReader
from services.protocol.witness import MAX_INPUTS, MAX_OUTPUTS

logger = get_logger("history")

SIGNATURE_PAGE = 1000
PROGRAM_DATA = "Program data:"
CIPHERTEXT_BYTES = 128

DEPOSIT = ix.instruction_discriminator("deposit")
INTERNAL_TRANSFER = ix.instruction_discriminator("internal_transfer")
REGISTER_IDENTITY = ix.instruction_discriminator("register_identity")
PAYOUTS = {
    ix.instruction_discriminator("withdraw"),
    ix.instruction_discriminator("external_transfer"),
    ix.instruction_discriminator("settle_authorization"),
}
NOTE_OUTPUT_EVENT = hashlib.sha256(b"event:NoteOutputEvent").digest()[:8]

# offsets into the public signals (see services.protocol.witness)
_OUTPUT_COMMITMENTS = 2 + MAX_INPUTS
_OUTPUT_ENABLED = _OUTPUT_COMMITMENTS + MAX_OUTPUTS
_PUBLIC_SIGNALS = _OUTPUT_ENABLED + MAX_OUTPUTS + 3


@dataclass(frozen=True)
class ProgramCall:
    data: bytes
    accounts: List[Pubkey]


@dataclass
class ChainTransaction:
    signature: str
    slot: int
    calls: List[ProgramCall] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class LeafRecord:
    leaf_index: int
    commitment: int
    ciphertext: Optional[bytes] = None


# ===== Fetch =====
def _account_keys(tx: Dict[str, Any]) -> List[Pubkey]:
    keys = list(tx["transaction"]["message"].get("accountKeys", []))
    loaded = (tx.get("meta") or {}).get("loadedAddresses") or {}
    keys += loaded.get("writable", []) + loaded.get("readonly", [])
    return [Pubkey.from_string(k) for k in keys]


def decode_transaction(signature: str, tx: Dict[str, Any], program_id: Pubkey) -> ChainTransaction:
    """Keep only top-level instructions addressed to `program_id` (json encoding, legacy or v0)."""
    keys = _account_keys(tx)
    out = ChainTransaction(signature=signature, slot=int(tx.get("slot") or 0))
    for raw in tx["transaction"]["message"].get("instructions", []):
        if keys[raw["programIdIndex"]] != program_id:
            continue
        out.calls.append(ProgramCall(
            data=base58.b58decode(raw["data"]),
            accounts=[keys[i] for i in raw.get("accounts", [])],
        ))
    out.logs = list((tx.get("meta") or {}).get("logMessages") or [])
    return out


async def fetch_history(
    rpc, address: Pubkey, program_id: Pubkey, max_signatures: Optional[int] = None
) -> List[ChainTransaction]:
    """Successful transactions touching `address`, oldest first."""
    entries: List[Dict[str, Any]] = []
    before: Optional[str] = None
    while max_signatures is None or len(entries) < max_signatures:
        limit = SIGNATURE_PAGE if max_signatures is None else min(SIGNATURE_PAGE, max_signatures - len(entries))
        batch = await rpc.get_signatures_for_address(address, before=before, limit=limit)
        if not batch:
            break
        entries.extend(batch)
        before = batch[-1]["signature"]

    history: List[ChainTransaction] = []
    for entry in reversed(entries):
        if entry.get("err"):
            continue
        tx = await rpc.get_transaction(entry["signature"])
        if tx is None or (tx.get("meta") or {}).get("err"):
            continue
        history.append(decode_transaction(entry["signature"], tx, program_id))
    logger.info("Fetched %d transactions for %s (%d signatures)", len(history), address, len(entries))
    return history


# ===== Decode =====
def _spend_outputs(public_inputs: bytes) -> List[int]:
    words = [from_bytes32(public_inputs[i:i + 32]) for i in range(0, len(public_inputs), 32)]
    if len(words) != _PUBLIC_SIGNALS:
        raise ValueError(f"expected {_PUBLIC_SIGNALS} public inputs, got {len(words)}")
    commitments = words[_OUTPUT_COMMITMENTS:_OUTPUT_ENABLED]
    enabled = words[_OUTPUT_ENABLED:_OUTPUT_ENABLED + MAX_OUTPUTS]
    return [c for c, on in zip(commitments, enabled) if on]


def call_outputs(data: bytes) -> List[Tuple[int, Optional[bytes]]]:
    """(commitment, ciphertext) for every leaf one pool instruction appends."""
    disc, args = data[:8], BorshReader(data, "instruction", 8)
    if disc == DEPOSIT:
        args.u64()
        ciphertext, commitment = args.vec(), args.vec()
        return [(from_bytes32(commitment), ciphertext)]
    if disc in PAYOUTS:
        args.u64()
        args.vec()
        return [(c, None) for c in _spend_outputs(args.vec())]
    if disc == INTERNAL_TRANSFER:
        args.vec()
        return [(c, None) for c in _spend_outputs(args.vec())]
    return []


def note_events(logs: List[str], mint: Pubkey) -> Iterator[Tuple[int, int, bytes]]:
    """(leaf_index, commitment, ciphertext) from NoteOutputEvent records for `mint`."""
    for line in logs:
        if not line.startswith(PROGRAM_DATA):
            continue
        try:
            raw = base64.b64decode(line[len(PROGRAM_DATA):].strip(), validate=True)
            if raw[:8] != NOTE_OUTPUT_EVENT:
                continue
            event = BorshReader(raw, "NoteOutputEvent", 8)
            event_mint, leaf_index = event.pubkey(), event.u64()
            commitment, ciphertext = from_bytes32(event.vec()), event.vec()
        except ValueError:
            continue
        if event_mint == mint and len(ciphertext) == CIPHERTEXT_BYTES:
            yield leaf_index, commitment, ciphertext


def pool_leaves(history: List[ChainTransaction], shielded_state: Pubkey, mint: Pubkey) -> List[LeafRecord]:
    leaves: List[LeafRecord] = []
    events: Dict[int, Tuple[int, bytes]] = {}
    for tx in history:
        for call in tx.calls:
            if shielded_state not in call.accounts:
                continue
            try:
                outputs = call_outputs(call.data)
            except ValueError as e:
                logger.warning("Skipping undecodable instruction in %s: %s", tx.signature, e)
                continue
            for commitment, ciphertext in outputs:
                leaves.append(LeafRecord(len(leaves), commitment, ciphertext))
        for leaf_index, commitment, ciphertext in note_events(tx.logs, mint):
            events[leaf_index] = (commitment, ciphertext)

    for i, leaf in enumerate(leaves):
        event = events.get(leaf.leaf_index)
        if leaf.ciphertext is None and event is not None and event[0] == leaf.commitment:
            leaves[i] = LeafRecord(leaf.leaf_index, leaf.commitment, event[1])
    return leaves


def identity_commitments(history: List[ChainTransaction]) -> List[int]:
    commitments: List[int] = []
    for tx in history:
        for call in tx.calls:
            if call.data[:8] != REGISTER_IDENTITY:
                continue
            try:
                commitments.append(from_bytes32(BorshReader(call.data, "register_identity", 8).vec()))
            except ValueError as e:
                logger.warning("Skipping undecodable register_identity in %s: %s", tx.signature, e)
    return commitments
