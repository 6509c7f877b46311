# services/protocol/identity.py
from __future__ import annotations

from typing import List, Optional, Sequence

from solders.pubkey import Pubkey

from services.api.logging_config import get_logger
from services.crypto_core.commitments import identity_commitment
from services.crypto_core.field import to_bytes32
from services.crypto_core.keys import derive_identity_secret
from services.crypto_core.merkle import DEFAULT_DEPTH, MerklePath, build_tree, path_for
from services.database.kv import KeyValueStore
from services.protocol import accounts, instructions as ix, pda
from services.protocol.errors import ChainRejection, Desync
from services.protocol.history import fetch_history, identity_commitments
from services.protocol.wallet import KeypairWallet

logger = get_logger("identity")


class IdentityRegistry:
    """
    Membership of the caller's identity commitment in the program-wide
    identity tree.

    The commitment list is shared by every owner of a program; the leaf index
    is kept per owner. The identity secret is re-derived from a wallet
    signature whenever needed and only held in memory.
    """

    def __init__(
        self,
        store: KeyValueStore,
        rpc,
        submitter,
        program_id: Pubkey,
        wallet: KeypairWallet,
        depth: int = DEFAULT_DEPTH,
    ):
        self.store = store
        self.rpc = rpc
        self.submitter = submitter
        self.program_id = program_id
        self.wallet = wallet
        self.depth = depth
        self._secret: Optional[int] = None

    # ---- keys ----
    @property
    def _commitments_key(self) -> str:
        return f"veilpay.identity-commitments.{self.program_id}"

    @property
    def _index_key(self) -> str:
        return f"veilpay.identity-index.{self.program_id}.{self.wallet.address}"

    # ---- local state ----
    def secret(self) -> int:
        if self._secret is None:
            self._secret = derive_identity_secret(str(self.program_id), self.wallet.address, self.wallet.sign_message)
        return self._secret

    def commitment(self) -> int:
        return identity_commitment(self.secret())

    def commitments(self) -> List[int]:
        return [int(c) for c in self.store.get(self._commitments_key, [])]

    def _write(self, commitments: Sequence[int], leaf_index: Optional[int]) -> None:
        self.store.set(self._commitments_key, [str(c) for c in commitments])
        if leaf_index is None:
            self.store.delete(self._index_key)
        else:
            self.store.set(self._index_key, leaf_index)

    def _save(self, commitments: Sequence[int], leaf_index: Optional[int]) -> None:
        with self.store.transaction():
            self._write(commitments, leaf_index)

    def leaf_index(self) -> Optional[int]:
        raw = self.store.get(self._index_key)
        return None if raw is None else int(raw)

    def root(self) -> int:
        return build_tree(self.commitments(), self.depth)[0]

    # ---- chain ----
    async def fetch_state(self) -> accounts.IdentityRegistry:
        data = await self.rpc.get_account_info(pda.derive_identity_registry(self.program_id))
        if data is None:
            raise ChainRejection("Identity registry account not found; is the program initialized?")
        return accounts.IdentityRegistry.decode(data)

    def _reconcile(self, state: accounts.IdentityRegistry) -> List[int]:
        """Trim a surplus left by a failed registration; the trim only persists if the root then matches."""
        with self.store.transaction():
            commitments = self.commitments()
            if len(commitments) > state.commitment_count:
                logger.warning(
                    "Identity list ahead of chain (%d > %d); dropping surplus",
                    len(commitments), state.commitment_count,
                )
                commitments = commitments[: state.commitment_count]
                index = self.leaf_index()
                self._write(commitments, index if index is not None and index < len(commitments) else None)
            elif len(commitments) < state.commitment_count:
                raise Desync(
                    f"Identity list has {len(commitments)} leaves, chain has {state.commitment_count}; rescan required"
                )
            if build_tree(commitments, self.depth)[0] != state.root:
                raise Desync("Local identity root does not match on-chain identity root")
        return commitments

    async def ensure_registered(self) -> int:
        """Register the caller's identity commitment once. Returns the identity root."""
        state = await self.fetch_state()
        commitments = self._reconcile(state)
        mine = self.commitment()
        if mine in commitments:
            index = commitments.index(mine)
            if self.leaf_index() != index:
                self._save(commitments, index)
            return state.root

        updated = commitments + [mine]
        new_root = build_tree(updated, self.depth)[0]
        logger.info("Registering identity for %s at leaf %d", self.wallet.address, len(commitments))
        await self.submitter.send_direct([
            ix.register_identity(self.program_id, self.wallet.pubkey, to_bytes32(mine), to_bytes32(new_root))
        ])
        self._save(updated, len(commitments))
        return new_root

    def identity_path(self) -> MerklePath:
        index = self.leaf_index()
        commitments = self.commitments()
        if index is None or index >= len(commitments) or commitments[index] != self.commitment():
            raise Desync("Identity is not registered locally; run ensure_registered first")
        return path_for(commitments, index, self.depth)

    async def rescan(self, commitments: Sequence[int]) -> Optional[int]:
        """Replace the local list with recovered history once it matches the chain."""
        state = await self.fetch_state()
        commitments = list(commitments)
        if len(commitments) != state.commitment_count:
            raise Desync(f"Recovered {len(commitments)} identity leaves, chain has {state.commitment_count}")
        if build_tree(commitments, self.depth)[0] != state.root:
            raise Desync("Recovered identity history does not match on-chain root")
        mine = self.commitment()
        index = commitments.index(mine) if mine in commitments else None
        self._save(commitments, index)
        return index

    async def rescan_from_chain(self, max_signatures: Optional[int] = None) -> Optional[int]:
        """Rebuild the identity list from register_identity instructions in the program's history."""
        registry = pda.derive_identity_registry(self.program_id)
        history = await fetch_history(self.rpc, registry, self.program_id, max_signatures)
        return await self.rescan(identity_commitments(history))
