# services/protocol/nullifiers.py
from __future__ import annotations

import struct
from typing import Dict, Iterable, List

from solders.pubkey import Pubkey

from services.api.logging_config import get_logger
from services.crypto_core.field import to_bytes32
from services.protocol import instructions as ix
from services.protocol.accounts import NULLIFIER_BITS, NullifierSet
from services.protocol.errors import ChainRejection

logger = get_logger("nullifiers")


def chunk_index(nullifier: int) -> int:
    """u32 LE over the first four bytes of the big-endian encoding, as the program reads it."""
    return struct.unpack_from("<I", to_bytes32(nullifier), 0)[0]


def bit_index(nullifier: int) -> int:
    return struct.unpack_from("<H", to_bytes32(nullifier), 4)[0] % NULLIFIER_BITS


def _already_exists(err: ChainRejection) -> bool:
    text = f"{err} {err.body}".lower()
    return "already in use" in text or "already exists" in text


class NullifierRegistry:
    """
    Lazily provisions nullifier chunk accounts for one pool.

    `submitter` must expose `send_direct(instructions)`; `rpc` must expose
    `account_exists(pubkey)` and `get_account_info(pubkey)`. Chunks seen to
    exist are cached, so a second call for the same chunk never touches the
    chain.
    """

    def __init__(self, rpc, submitter, pool: ix.PoolAccounts, payer: Pubkey):
        self.rpc = rpc
        self.submitter = submitter
        self.pool = pool
        self.payer = payer
        self._known: Dict[int, Pubkey] = {}

    async def ensure_chunk(self, index: int) -> Pubkey:
        if index in self._known:
            return self._known[index]
        address = self.pool.nullifier_set(index)
        if not await self.rpc.account_exists(address):
            logger.info("Initializing nullifier chunk %d (%s)", index, address)
            try:
                await self.submitter.send_direct([ix.initialize_nullifier_chunk(self.pool, self.payer, index)])
            except ChainRejection as e:
                if not _already_exists(e):
                    raise
                logger.info("Nullifier chunk %d was created concurrently", index)
        self._known[index] = address
        return address

    async def is_spent(self, nullifier: int) -> bool:
        data = await self.rpc.get_account_info(self.pool.nullifier_set(chunk_index(nullifier)))
        if data is None:
            return False
        return NullifierSet.decode(data).is_set(bit_index(nullifier))

    async def ensure_for(self, nullifier: int) -> Pubkey:
        return await self.ensure_chunk(chunk_index(nullifier))

    async def ensure_chunks(self, nullifiers: Iterable[int], padding_chunks: int = 0) -> List[int]:
        """Provision every chunk the nullifiers route to; returns chunk indexes in first-seen order."""
        indexes: List[int] = []
        for n in nullifiers:
            if n == 0:
                continue
            c = chunk_index(n)
            if c not in indexes:
                indexes.append(c)
        for c in range(padding_chunks):
            if c not in indexes:
                indexes.append(c)
        for c in indexes:
            await self.ensure_chunk(c)
        return indexes
