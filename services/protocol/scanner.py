# services/protocol/scanner.py
# Trial decryption of published outputs with the owner's view keys.
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence

from services.api.logging_config import get_logger
from services.crypto_core.babyjub import require_point
from services.crypto_core.commitments import U64_MAX, note_commitment
from services.crypto_core.keys import ViewKeypair
from services.crypto_core.note_cipher import decrypt_note, parse_ciphertext
from services.database.notes import Note, note_id

logger = get_logger("scanner")


@dataclass(frozen=True)
class PublishedOutput:
    leaf_index: int
    commitment: int
    ciphertext: bytes


def scan_notes(asset: str, view_keys: Sequence[ViewKeypair], records: Iterable[PublishedOutput]) -> List[Note]:
    """
    A record belongs to us when decrypting with one of our view keys yields
    (amount, randomness) that re-hash to the published commitment.
    """
    found: List[Note] = []
    for rec in records:
        try:
            ct = parse_ciphertext(rec.ciphertext)
            require_point(ct.c1, "C1")
        except ValueError:
            logger.debug("Skipping leaf %d: malformed ciphertext", rec.leaf_index)
            continue
        for vk in view_keys:
            amount, randomness = decrypt_note(vk.secret, ct)
            if amount > U64_MAX:
                continue
            if note_commitment(amount, randomness, vk.tag_hash) != rec.commitment:
                continue
            found.append(Note(
                id=note_id(asset, rec.leaf_index),
                asset=asset,
                amount=amount,
                randomness=randomness,
                sender_secret=randomness,
                leaf_index=rec.leaf_index,
                recipient_tag_hash=vk.tag_hash,
                commitment=rec.commitment,
                recipient_pubkey_x=vk.pubkey[0],
                recipient_pubkey_y=vk.pubkey[1],
                c1x=ct.c1[0],
                c1y=ct.c1[1],
                c2_amount=ct.c2_amount,
                c2_randomness=ct.c2_randomness,
            ))
            break
    logger.info("Scanned outputs for %s: recovered %d notes", asset, len(found))
    return found
