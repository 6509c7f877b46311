# services/database/notes.py
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from services.api.logging_config import get_logger
from services.crypto_core.babyjub import Point
from services.crypto_core.commitments import note_commitment, nullifier, recipient_tag_hash
from services.crypto_core.field import random_field
from services.crypto_core.merkle import DEFAULT_DEPTH, MerkleTree, build_tree
from services.crypto_core.note_cipher import NoteCiphertext, encrypt_note
from services.crypto_core.selection import select_for_amount
from services.database.kv import KeyValueStore, Namespace
from services.protocol.errors import Desync, InsufficientFunds, MalformedNote

logger = get_logger("notes")


class Note(BaseModel):
    id: str
    asset: str
    amount: int = Field(..., ge=0, description="u64 amount in base units.")
    randomness: int
    sender_secret: int = Field(..., description="Spending capability; input to the nullifier.")
    leaf_index: int = Field(..., ge=0)
    recipient_tag_hash: int
    commitment: int
    spent: bool = False
    # ECIES fields, present on every note this client produced as an output
    recipient_pubkey_x: Optional[int] = None
    recipient_pubkey_y: Optional[int] = None
    enc_randomness: Optional[int] = None
    c1x: Optional[int] = None
    c1y: Optional[int] = None
    c2_amount: Optional[int] = None
    c2_randomness: Optional[int] = None

    @property
    def recipient_pubkey(self) -> Optional[Point]:
        if self.recipient_pubkey_x is None or self.recipient_pubkey_y is None:
            return None
        return self.recipient_pubkey_x, self.recipient_pubkey_y

    def has_ecies(self) -> bool:
        return None not in (
            self.recipient_pubkey_x, self.recipient_pubkey_y, self.enc_randomness,
            self.c1x, self.c1y, self.c2_amount, self.c2_randomness,
        )

    def ciphertext(self) -> NoteCiphertext:
        if not self.has_ecies():
            raise MalformedNote(f"note {self.id} is missing encryption fields")
        return NoteCiphertext(
            c1=(self.c1x, self.c1y),
            c2_amount=self.c2_amount,
            c2_randomness=self.c2_randomness,
            enc_randomness=self.enc_randomness,
        )

    def nullifier(self) -> int:
        return nullifier(self.sender_secret, self.leaf_index)


def note_id(asset: str, leaf_index: int) -> str:
    return f"{asset}:{leaf_index}"


def create_note(asset: str, amount: int, recipient_pub: Point, leaf_index: int) -> Tuple[Note, bytes]:
    """Fresh output note addressed to `recipient_pub`. Returns (note, 128-byte ciphertext)."""
    randomness = random_field()
    tag = recipient_tag_hash(recipient_pub)
    enc = encrypt_note(recipient_pub, amount, randomness)
    note = Note(
        id=note_id(asset, leaf_index),
        asset=asset,
        amount=amount,
        randomness=randomness,
        sender_secret=randomness,
        leaf_index=leaf_index,
        recipient_tag_hash=tag,
        commitment=note_commitment(amount, randomness, tag),
        recipient_pubkey_x=recipient_pub[0],
        recipient_pubkey_y=recipient_pub[1],
        enc_randomness=enc.enc_randomness,
        c1x=enc.c1[0],
        c1y=enc.c1[1],
        c2_amount=enc.c2_amount,
        c2_randomness=enc.c2_randomness,
    )
    return note, enc.to_bytes()


class NoteStore:
    """
    Owned notes and the locally known commitment list for one (owner, asset).

    The commitment list holds every leaf of the on-chain tree in order, not
    only this owner's notes. All mutations go through a store transaction.
    """

    def __init__(self, store: KeyValueStore, owner: str, asset: str, depth: int = DEFAULT_DEPTH):
        self.ns = Namespace(store, owner, asset)
        self.owner = owner
        self.asset = asset
        self.depth = depth

    # ---- raw state ----
    def load(self) -> List[Note]:
        return [Note.model_validate(n) for n in self.ns.get("notes", [])]

    def save(self, notes: Iterable[Note]) -> None:
        ordered = sorted(notes, key=lambda n: n.leaf_index)
        self.ns.set("notes", [n.model_dump() for n in ordered])

    def commitments(self) -> List[int]:
        return [int(c) for c in self.ns.get("commitments", [])]

    def set_commitments(self, commitments: Sequence[int]) -> None:
        self.ns.set("commitments", [str(c) for c in commitments])

    def append_commitments(self, commitments: Sequence[int]) -> int:
        """Append leaves; returns the index of the first appended leaf."""
        with self.ns.transaction():
            current = self.commitments()
            start = len(current)
            self.set_commitments(current + list(commitments))
        return start

    def tree(self) -> MerkleTree:
        return MerkleTree(self.commitments(), self.depth)

    def root(self) -> int:
        return build_tree(self.commitments(), self.depth)[0]

    # ---- notes ----
    def get(self, nid: str) -> Note:
        for n in self.load():
            if n.id == nid:
                return n
        raise KeyError(nid)

    def add(self, note: Note) -> None:
        with self.ns.transaction():
            notes = self.load()
            if any(n.leaf_index == note.leaf_index for n in notes):
                raise ValueError(f"duplicate note at leaf index {note.leaf_index}")
            notes.append(note)
            self.save(notes)

    def mark_spent(self, note_ids: Sequence[str]) -> None:
        wanted = set(note_ids)
        with self.ns.transaction():
            notes = self.load()
            by_id = {n.id: n for n in notes}
            for nid in wanted:
                if nid not in by_id:
                    raise KeyError(f"unknown note {nid}")
                if by_id[nid].spent:
                    raise ValueError(f"note {nid} already spent")
            for n in notes:
                if n.id in wanted:
                    n.spent = True
            self.save(notes)

    def list_spendable(self) -> List[Note]:
        count = len(self.ns.get("commitments", []))
        return [n for n in self.load() if not n.spent and n.leaf_index < count]

    def balance(self) -> int:
        return sum(n.amount for n in self.list_spendable())

    def select_for_amount(self, target: int, max_inputs: int) -> Tuple[List[Note], int]:
        spendable = self.list_spendable()
        picked = select_for_amount(spendable, target, max_inputs)
        if picked is None:
            available = sum(n.amount for n in spendable)
            raise InsufficientFunds(
                f"Cannot cover {target} with at most {max_inputs} notes (spendable {available})",
                available=available,
                requested=target,
            )
        return picked

    def commit_flow(
        self,
        spent_ids: Sequence[str],
        new_notes: Sequence[Note],
        new_commitments: Sequence[int],
        expected_start: int,
    ) -> None:
        """Apply a confirmed flow in one transaction: spend inputs, append leaves, keep outputs."""
        with self.ns.transaction():
            current = self.commitments()
            if len(current) != expected_start:
                raise Desync(
                    f"commitment list moved during flow: expected {expected_start} leaves, found {len(current)}"
                )
            if spent_ids:
                self.mark_spent(spent_ids)
            self.set_commitments(current + list(new_commitments))
            for note in new_notes:
                self.add(note)

    # ---- chain agreement ----
    def reconcile(self, on_chain_count: int, on_chain_root: int) -> int:
        """
        Check the local tree against on-chain (commitment_count, merkle_root).

        A longer local list is the residue of a broadcast that never landed:
        the surplus leaves and the notes sitting on them are dropped. A shorter
        list or a root mismatch at equal length raises Desync. Returns the
        number of leaves dropped.
        """
        with self.ns.transaction():
            commitments = self.commitments()
            dropped = 0
            if len(commitments) > on_chain_count:
                dropped = len(commitments) - on_chain_count
                commitments = commitments[:on_chain_count]
                self.set_commitments(commitments)
                kept = [n for n in self.load() if n.leaf_index < on_chain_count]
                self.save(kept)
                logger.warning(
                    "Local tree ahead of chain for %s: dropped %d surplus leaves", self.asset, dropped
                )
            elif len(commitments) < on_chain_count:
                raise Desync(
                    f"Local commitment list has {len(commitments)} leaves, chain has {on_chain_count}"
                )
            root = build_tree(commitments, self.depth)[0]
            if root != on_chain_root:
                raise Desync(f"Local root does not match on-chain root at {on_chain_count} leaves")
        return dropped

    def rescan(self, commitments: Sequence[int], recovered: Sequence[Note], on_chain_root: int) -> int:
        """Replace the commitment list from recovered history once it hashes to the on-chain root."""
        if build_tree(commitments, self.depth)[0] != on_chain_root:
            raise Desync("Recovered commitment history does not match on-chain root")
        with self.ns.transaction():
            self.set_commitments(commitments)
            known = {n.leaf_index: n for n in self.load()}
            added = 0
            for note in recovered:
                if note.leaf_index >= len(commitments) or commitments[note.leaf_index] != note.commitment:
                    continue
                if note.leaf_index not in known:
                    known[note.leaf_index] = note
                    added += 1
            self.save(known.values())
        return added
