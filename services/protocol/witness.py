# services/protocol/witness.py
"""
Fixed-arity spend witness.

The circuit always sees MAX_INPUTS input slots and MAX_OUTPUTS output slots.
Unused input slots are zero with a zero path; unused output slots are zero
but keep the sender's own view key as recipient so the point constraints
stay satisfiable. The string-keyed map only exists at the prover boundary
(`to_circuit_input`).

Public signal order, shared with the on-chain parser:
    root, identity_root, nullifier[MAX_INPUTS], output_commitment[MAX_OUTPUTS],
    output_enabled[MAX_OUTPUTS], amount_out, fee_amount, circuit_id
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from services.crypto_core.babyjub import Point
from services.crypto_core.commitments import identity_commitment, note_commitment, recipient_tag_hash
from services.crypto_core.field import to_bytes32
from services.crypto_core.merkle import DEFAULT_DEPTH, MerklePath, build_tree, empty_path, path_from_levels, verify_path
from services.database.notes import Note
from services.protocol.errors import Desync, MalformedNote

MAX_INPUTS = 4
MAX_OUTPUTS = 2

RECIPIENT_SLOT = 0
CHANGE_SLOT = 1


@dataclass(frozen=True)
class InputSlot:
    enabled: int
    amount: int
    randomness: int
    sender_secret: int
    leaf_index: int
    recipient_tag_hash: int
    path: MerklePath
    nullifier: int


@dataclass(frozen=True)
class OutputSlot:
    enabled: int
    commitment: int
    amount: int
    randomness: int
    recipient_tag_hash: int
    recipient_pubkey: Point
    enc_randomness: int
    c1: Point
    c2_amount: int
    c2_randomness: int


@dataclass(frozen=True)
class Witness:
    root: int
    identity_root: int
    identity_secret: int
    identity_path: MerklePath
    inputs: Tuple[InputSlot, ...]
    outputs: Tuple[OutputSlot, ...]
    amount_out: int
    fee_amount: int
    circuit_id: int

    @property
    def nullifiers(self) -> List[int]:
        return [s.nullifier for s in self.inputs]

    @property
    def output_commitments(self) -> List[int]:
        return [s.commitment for s in self.outputs]

    def public_signals(self) -> List[int]:
        return [
            self.root,
            self.identity_root,
            *self.nullifiers,
            *self.output_commitments,
            *(s.enabled for s in self.outputs),
            self.amount_out,
            self.fee_amount,
            self.circuit_id,
        ]

    def public_inputs_bytes(self) -> bytes:
        return b"".join(to_bytes32(v) for v in self.public_signals())

    def to_circuit_input(self) -> Dict[str, Any]:
        def s(v: int) -> str:
            return str(v)

        ins, outs = self.inputs, self.outputs
        return {
            "root": s(self.root),
            "identity_root": s(self.identity_root),
            "nullifier": [s(x.nullifier) for x in ins],
            "output_commitment": [s(x.commitment) for x in outs],
            "output_enabled": [s(x.enabled) for x in outs],
            "amount_out": s(self.amount_out),
            "fee_amount": s(self.fee_amount),
            "circuit_id": s(self.circuit_id),
            "input_enabled": [s(x.enabled) for x in ins],
            "input_amount": [s(x.amount) for x in ins],
            "input_randomness": [s(x.randomness) for x in ins],
            "input_sender_secret": [s(x.sender_secret) for x in ins],
            "input_leaf_index": [s(x.leaf_index) for x in ins],
            "input_recipient_tag_hash": [s(x.recipient_tag_hash) for x in ins],
            "input_path_elements": [[s(e) for e in x.path.siblings] for x in ins],
            "input_path_index": [list(x.path.directions) for x in ins],
            "output_amount": [s(x.amount) for x in outs],
            "output_randomness": [s(x.randomness) for x in outs],
            "output_recipient_tag_hash": [s(x.recipient_tag_hash) for x in outs],
            "output_recipient_pubkey_x": [s(x.recipient_pubkey[0]) for x in outs],
            "output_recipient_pubkey_y": [s(x.recipient_pubkey[1]) for x in outs],
            "output_enc_randomness": [s(x.enc_randomness) for x in outs],
            "output_c1x": [s(x.c1[0]) for x in outs],
            "output_c1y": [s(x.c1[1]) for x in outs],
            "output_c2_amount": [s(x.c2_amount) for x in outs],
            "output_c2_randomness": [s(x.c2_randomness) for x in outs],
            "identity_secret": s(self.identity_secret),
            "identity_path_elements": [s(e) for e in self.identity_path.siblings],
            "identity_path_index": list(self.identity_path.directions),
        }


def _disabled_input(depth: int) -> InputSlot:
    return InputSlot(0, 0, 0, 0, 0, 0, empty_path(depth), 0)


def _disabled_output(sender_pubkey: Point) -> OutputSlot:
    return OutputSlot(
        enabled=0,
        commitment=0,
        amount=0,
        randomness=0,
        recipient_tag_hash=recipient_tag_hash(sender_pubkey),
        recipient_pubkey=sender_pubkey,
        enc_randomness=0,
        c1=(0, 0),
        c2_amount=0,
        c2_randomness=0,
    )


def _output_slot(note: Note) -> OutputSlot:
    if not note.has_ecies():
        raise MalformedNote(f"output note {note.id} is missing encryption fields")
    pub = note.recipient_pubkey
    if recipient_tag_hash(pub) != note.recipient_tag_hash:
        raise MalformedNote(f"output note {note.id} tag does not match its recipient key")
    if note_commitment(note.amount, note.randomness, note.recipient_tag_hash) != note.commitment:
        raise MalformedNote(f"output note {note.id} commitment does not match its fields")
    return OutputSlot(
        enabled=1,
        commitment=note.commitment,
        amount=note.amount,
        randomness=note.randomness,
        recipient_tag_hash=note.recipient_tag_hash,
        recipient_pubkey=pub,
        enc_randomness=note.enc_randomness,
        c1=(note.c1x, note.c1y),
        c2_amount=note.c2_amount,
        c2_randomness=note.c2_randomness,
    )


def build_witness(
    inputs: Sequence[Note],
    commitments: Sequence[int],
    outputs: Sequence[Optional[Note]],
    sender_pubkey: Point,
    identity_secret: int,
    identity_path: MerklePath,
    amount_out: int = 0,
    fee_amount: int = 0,
    circuit_id: int = 0,
    depth: int = DEFAULT_DEPTH,
    max_inputs: int = MAX_INPUTS,
    max_outputs: int = MAX_OUTPUTS,
) -> Witness:
    """
    `outputs` is positional: index 0 is the in-pool recipient slot, index 1
    the change slot; None disables a slot. All input paths come from one
    tree over `commitments`.
    """
    if not inputs:
        raise MalformedNote("a spend needs at least one input note")
    if len(inputs) > max_inputs:
        raise MalformedNote(f"{len(inputs)} input notes exceed the circuit's {max_inputs} slots")
    if len(outputs) > max_outputs:
        raise MalformedNote(f"{len(outputs)} output slots exceed the circuit's {max_outputs} slots")
    if len({n.leaf_index for n in inputs}) != len(inputs):
        raise MalformedNote("the same note appears twice among the inputs")
    if amount_out < 0 or fee_amount < 0 or fee_amount > amount_out:
        raise MalformedNote(f"invalid amount_out={amount_out} fee_amount={fee_amount}")

    root, levels = build_tree(commitments, depth)
    in_slots: List[InputSlot] = []
    for note in inputs:
        try:
            path = path_from_levels(levels, note.leaf_index, depth)
        except IndexError as e:
            raise Desync(f"input note {note.id} is not in the local tree") from e
        if path.root != root or not verify_path(note.commitment, path):
            raise MalformedNote(f"input note {note.id} does not hash to the batch root")
        in_slots.append(InputSlot(
            enabled=1,
            amount=note.amount,
            randomness=note.randomness,
            sender_secret=note.sender_secret,
            leaf_index=note.leaf_index,
            recipient_tag_hash=note.recipient_tag_hash,
            path=path,
            nullifier=note.nullifier(),
        ))
    in_slots += [_disabled_input(depth)] * (max_inputs - len(in_slots))

    out_slots = [_output_slot(n) if n is not None else _disabled_output(sender_pubkey) for n in outputs]
    out_slots += [_disabled_output(sender_pubkey)] * (max_outputs - len(out_slots))

    total_in = sum(s.amount for s in in_slots)
    total_out = sum(s.amount for s in out_slots if s.enabled) + amount_out
    if total_in != total_out:
        raise MalformedNote(f"value imbalance: inputs {total_in} != outputs {total_out}")

    if not verify_path(identity_commitment(identity_secret), identity_path):
        raise Desync("identity path does not prove the caller's identity commitment")

    return Witness(
        root=root,
        identity_root=identity_path.root,
        identity_secret=identity_secret,
        identity_path=identity_path,
        inputs=tuple(in_slots),
        outputs=tuple(out_slots),
        amount_out=amount_out,
        fee_amount=fee_amount,
        circuit_id=circuit_id,
    )
