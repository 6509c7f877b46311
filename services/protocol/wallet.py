# services/protocol/wallet.py
# Local keypair signer: ed25519 message signatures and transaction signing.
from __future__ import annotations

import json
from pathlib import Path
from typing import Union

import base58
from nacl.signing import SigningKey
from solders.keypair import Keypair
from solders.pubkey import Pubkey


def read_secret_64_from_json_value(v) -> bytes:
    if isinstance(v, list) and len(v) >= 64 and all(isinstance(x, int) for x in v[:64]):
        return bytes(v[:64])
    if isinstance(v, str):
        raw = base58.b58decode(v.strip())
        if len(raw) == 64:
            return raw
        if len(raw) == 32:
            return raw + bytes(SigningKey(raw).verify_key)
    raise ValueError("Unsupported secret key JSON format")


class KeypairWallet:
    """Owner identity for flows. Message signatures never leave the process."""

    def __init__(self, keypair: Keypair):
        self.keypair = keypair
        self._signing_key = SigningKey(bytes(keypair)[:32])

    @classmethod
    def from_keyfile(cls, path: Union[str, Path]) -> "KeypairWallet":
        with open(path, "r") as f:
            raw = json.load(f)
        return cls(Keypair.from_bytes(read_secret_64_from_json_value(raw)))

    @classmethod
    def generate(cls) -> "KeypairWallet":
        return cls(Keypair())

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    @property
    def address(self) -> str:
        return str(self.pubkey)

    def sign_message(self, message: bytes) -> bytes:
        return self._signing_key.sign(message).signature

    def sign_message_b58(self, message: bytes) -> str:
        return base58.b58encode(self.sign_message(message)).decode("ascii")
