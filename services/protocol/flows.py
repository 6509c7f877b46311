# services/protocol/flows.py
"""
Transaction orchestrator.

Every flow on a given asset runs under that asset's asyncio.Lock and follows
the same shape:

    sync -> select -> witness -> prove -> verify -> chunks -> submit -> confirm -> commit

Local note state is only written in the commit step, after the ledger has
confirmed the transaction. Nothing after the first relayer POST is retried.
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from services.api.config import ClientConfig, ConfigError
from services.api.logging_config import get_logger
from services.api.prover import Prover, ProofResult
from services.api.relayer import RelayerClient
from services.api.schemas_api import IntentReq
from services.crypto_core.babyjub import Point, require_point
from services.crypto_core.field import to_bytes32
from services.crypto_core.keys import ViewKeypair, derive_seed, derive_view_keypair, view_key_message, view_keypair_from_seed
from services.crypto_core.merkle import build_tree
from services.crypto_core.note_cipher import build_amount_ciphertext
from services.database.kv import KeyValueStore, Namespace
from services.database.notes import Note, NoteStore, create_note
from services.database.txlog import TransactionLog, TransactionRecord
from services.protocol import accounts, instructions as ix
from services.protocol.errors import ChainRejection, Desync, ProofFailure
from services.protocol.flow_steps import FlowStep, StepObserver, StepTracker
from services.protocol.history import fetch_history, pool_leaves
from services.protocol.identity import IdentityRegistry
from services.protocol.nullifiers import NullifierRegistry
from services.protocol.scanner import PublishedOutput, scan_notes
from services.protocol.transactions import Submitter
from services.protocol.wallet import KeypairWallet
from services.protocol.witness import CHANGE_SLOT, Witness, build_witness

logger = get_logger("flows")


# ===== Results =====
@dataclass
class DepositResult:
    signature: str
    note: Note
    new_root: int


@dataclass
class SpendResult:
    signature: str
    relayer_mode: str
    amount: int
    fee_amount: int
    spent_note_ids: List[str]
    nullifiers: List[int]
    new_root: int
    change: Optional[Note] = None
    # recipient output of an internal transfer, for out-of-band delivery
    recipient_ciphertext: Optional[bytes] = None
    recipient_leaf_index: Optional[int] = None


@dataclass
class AuthorizationResult:
    signature: str
    intent_hash: bytes
    relayer_id: str
    expiry_slot: int
    amount_ciphertext: bytes

    @property
    def intent_hash_hex(self) -> str:
        return self.intent_hash.hex()


def intent_hash(mint: Pubkey, payee_tag_hash: int, amount_ciphertext: bytes, expiry_slot: int) -> bytes:
    """sha256(mint || payee_tag_hash || amount_ciphertext || u64be(expiry_slot))."""
    return hashlib.sha256(
        bytes(mint) + to_bytes32(payee_tag_hash) + amount_ciphertext + expiry_slot.to_bytes(8, "big")
    ).digest()


class VeilPayClient:
    """
    One owner's view of the pool. Holds no global state: every piece of
    persisted data goes through `store`, keyed by (owner, asset).
    """

    def __init__(
        self,
        cfg: ClientConfig,
        wallet: KeypairWallet,
        store: KeyValueStore,
        rpc,
        relayer: RelayerClient,
        prover: Prover,
        txlog: Optional[TransactionLog] = None,
        submitter: Optional[Submitter] = None,
        observers: Optional[List[StepObserver]] = None,
    ):
        self.cfg = cfg
        self.wallet = wallet
        self.store = store
        self.rpc = rpc
        self.relayer = relayer
        self.prover = prover
        self.txlog = txlog or TransactionLog()
        self.submitter = submitter or Submitter(cfg, rpc, relayer, wallet)
        self.observers = list(observers or [])
        self.program_id = Pubkey.from_string(cfg.program_id)
        self.verifier_program_id = Pubkey.from_string(cfg.verifier_program_id)
        self.identity = IdentityRegistry(store, rpc, self.submitter, self.program_id, wallet, cfg.tree_depth)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._nullifier_registries: Dict[str, NullifierRegistry] = {}
        self._view: Optional[ViewKeypair] = None

    # ---- wiring ----
    def pool(self, mint: str) -> ix.PoolAccounts:
        return ix.PoolAccounts(
            program_id=self.program_id,
            verifier_program_id=self.verifier_program_id,
            mint=Pubkey.from_string(mint),
            verifier_key_id=self.cfg.verifier_key_id,
        )

    def notes(self, mint: str) -> NoteStore:
        return NoteStore(self.store, self.wallet.address, mint, self.cfg.tree_depth)

    def nullifier_registry(self, mint: str) -> NullifierRegistry:
        if mint not in self._nullifier_registries:
            self._nullifier_registries[mint] = NullifierRegistry(
                self.rpc, self.submitter, self.pool(mint), self.wallet.pubkey
            )
        return self._nullifier_registries[mint]

    def view_keypair(self) -> ViewKeypair:
        if self._view is None:
            self._view = derive_view_keypair(self.wallet.address, self.wallet.sign_message)
        return self._view

    def _lock(self, mint: str) -> asyncio.Lock:
        if mint not in self._locks:
            self._locks[mint] = asyncio.Lock()
        return self._locks[mint]

    def _tracker(self, flow: str, observer: Optional[StepObserver]) -> StepTracker:
        return StepTracker(flow, self.observers + ([observer] if observer else []))

    def _record(self, flow: str, signature: Optional[str], relayer: Optional[str], **details: Any) -> None:
        self.txlog.append(TransactionRecord(flow=flow, signature=signature, relayer=relayer, details=details))

    # ---- chain state ----
    async def fetch_shielded_state(self, mint: str) -> accounts.ShieldedState:
        data = await self.rpc.get_account_info(self.pool(mint).shielded_state)
        if data is None:
            raise ChainRejection(f"Shielded state for mint {mint} not found; is the pool initialized?")
        return accounts.ShieldedState.decode(data)

    async def _sync(self, mint: str) -> accounts.ShieldedState:
        state = await self.fetch_shielded_state(mint)
        self.notes(mint).reconcile(state.commitment_count, state.root)
        return state

    async def _recheck(self, mint: str, state: accounts.ShieldedState) -> None:
        fresh = await self.fetch_shielded_state(mint)
        if fresh.commitment_count != state.commitment_count or fresh.merkle_root != state.merkle_root:
            raise Desync(
                f"Pool state moved during flow ({state.commitment_count} -> {fresh.commitment_count} leaves); re-run"
            )

    # ---- proving ----
    async def _prove(self, witness: Witness) -> ProofResult:
        try:
            result = await asyncio.wait_for(
                self.prover.prove(witness.to_circuit_input()), timeout=self.cfg.prover_timeout_sec
            )
        except asyncio.TimeoutError as e:
            raise ProofFailure(f"Prover timed out after {self.cfg.prover_timeout_sec}s") from e
        if result.public_signals != witness.public_signals():
            raise ProofFailure("Prover public signals do not match the witness")
        return result

    async def _verify(self, result: ProofResult) -> None:
        try:
            ok = await asyncio.wait_for(
                self.prover.verify(result.proof, result.public_signals), timeout=self.cfg.verify_timeout_sec
            )
        except asyncio.TimeoutError as e:
            raise ProofFailure(f"Preflight verification timed out after {self.cfg.verify_timeout_sec}s") from e
        if not ok:
            raise ProofFailure("Preflight verification rejected the proof")

    # ---- public flows ----
    async def register(self, observer: Optional[StepObserver] = None) -> int:
        tracker = self._tracker("register_identity", observer)
        with tracker.step(FlowStep.SUBMIT):
            root = await self.identity.ensure_registered()
        self._record("register_identity", None, None, identity_root=str(root))
        return root

    async def reconcile(self, mint: str) -> int:
        async with self._lock(mint):
            state = await self.fetch_shielded_state(mint)
            return self.notes(mint).reconcile(state.commitment_count, state.root)

    def balance(self, mint: str) -> int:
        return self.notes(mint).balance()

    async def deposit(self, mint: str, amount: int, observer: Optional[StepObserver] = None) -> DepositResult:
        if amount <= 0:
            raise ValueError("deposit amount must be positive")
        tracker = self._tracker("deposit", observer)
        async with self._lock(mint):
            store = self.notes(mint)
            with tracker.step(FlowStep.SYNC):
                state = await self._sync(mint)
                commitments = store.commitments()
            note, ciphertext = create_note(mint, amount, self.view_keypair().pubkey, state.commitment_count)
            new_root = build_tree(commitments + [note.commitment], self.cfg.tree_depth)[0]
            pool = self.pool(mint)
            with tracker.step(FlowStep.SUBMIT):
                await self._recheck(mint, state)
                signature = await self.submitter.send_direct(
                    [ix.deposit(pool, self.wallet.pubkey, amount, ciphertext, to_bytes32(note.commitment), to_bytes32(new_root))],
                    confirm=False,
                )
            with tracker.step(FlowStep.CONFIRM):
                await self.rpc.confirm_transaction(signature, timeout=self.cfg.confirm_timeout_sec)
            with tracker.step(FlowStep.COMMIT):
                store.commit_flow([], [note], [note.commitment], state.commitment_count)
        self._record("deposit", signature, None, mint=mint, amount=amount, leaf_index=note.leaf_index)
        return DepositResult(signature=signature, note=note, new_root=new_root)

    async def withdraw(
        self,
        mint: str,
        amount: int,
        recipient: Optional[Pubkey] = None,
        observer: Optional[StepObserver] = None,
    ) -> SpendResult:
        """Move `amount` out of the pool to `recipient`'s token account (default: the caller)."""
        return await self._payout("withdraw", mint, amount, recipient or self.wallet.pubkey, observer)

    async def external_transfer(
        self, mint: str, amount: int, recipient: Pubkey, observer: Optional[StepObserver] = None
    ) -> SpendResult:
        return await self._payout("external_transfer", mint, amount, recipient, observer)

    async def internal_transfer(
        self, mint: str, amount: int, recipient_view_key: Point, observer: Optional[StepObserver] = None
    ) -> SpendResult:
        require_point(recipient_view_key, "recipient view key")
        if amount <= 0:
            raise ValueError("transfer amount must be positive")
        tracker = self._tracker("internal_transfer", observer)
        async with self._lock(mint):
            with tracker.step(FlowStep.SYNC):
                state, commitments = await self._spend_sync(mint)
            inputs, total = self.notes(mint).select_for_amount(amount, self.cfg.max_inputs)
            leaf = state.commitment_count
            recipient_note, recipient_ct = create_note(mint, amount, recipient_view_key, leaf)
            outputs: List[Optional[Note]] = [recipient_note, None]
            if total > amount:
                outputs[CHANGE_SLOT], _ = create_note(mint, total - amount, self.view_keypair().pubkey, leaf + 1)
            witness = self._witness(inputs, commitments, outputs, 0, 0)
            proof = await self._prove_and_verify(tracker, witness)

            pool = self.pool(mint)
            with tracker.step(FlowStep.CHUNKS):
                chunks = await self.nullifier_registry(mint).ensure_chunks(
                    witness.nullifiers, self.cfg.nullifier_padding_chunks
                )
            new_leaves = [n.commitment for n in outputs if n is not None]
            new_root = build_tree(commitments + new_leaves, self.cfg.tree_depth)[0]
            instruction = ix.internal_transfer(
                pool, proof.proof_bytes, witness.public_inputs_bytes(), to_bytes32(new_root), chunks
            )
            signature, mode = await self._submit_spend(tracker, mint, state, [instruction])
            owned = [n for n in outputs if n is not None and n.recipient_tag_hash == self.view_keypair().tag_hash]
            with tracker.step(FlowStep.COMMIT):
                self.notes(mint).commit_flow([n.id for n in inputs], owned, new_leaves, state.commitment_count)

        result = SpendResult(
            signature=signature,
            relayer_mode=mode,
            amount=amount,
            fee_amount=0,
            spent_note_ids=[n.id for n in inputs],
            nullifiers=[n.nullifier() for n in inputs],
            new_root=new_root,
            change=outputs[CHANGE_SLOT],
            recipient_ciphertext=recipient_ct,
            recipient_leaf_index=recipient_note.leaf_index,
        )
        self._record(
            "internal_transfer", signature, mode, mint=mint, amount=amount,
            spent=result.spent_note_ids, recipient_leaf=recipient_note.leaf_index,
        )
        return result

    async def create_authorization(
        self,
        mint: str,
        amount: int,
        payee_view_key: Point,
        payee: Pubkey,
        observer: Optional[StepObserver] = None,
    ) -> AuthorizationResult:
        """Publish a claimable intent for `amount` to `payee`; settled later by `settle_authorization`."""
        require_point(payee_view_key, "payee view key")
        if amount <= 0:
            raise ValueError("authorization amount must be positive")
        tracker = self._tracker("create_authorization", observer)
        pool = self.pool(mint)
        async with self._lock(mint):
            with tracker.step(FlowStep.SYNC):
                slot = await self.rpc.get_slot()
            amount_ct = build_amount_ciphertext(payee_view_key, amount)
            expiry_slot = slot + self.cfg.auth_expiry_slots
            digest = intent_hash(pool.mint, amount_ct.payee_tag_hash, amount_ct.ciphertext, expiry_slot)
            proof_hash = os.urandom(32)
            domain = self.cfg.protocol_domain
            relayer_pubkey = Pubkey.from_string(self.cfg.relayer_pubkey) if self.cfg.relayer_pubkey else None

            with tracker.step(FlowStep.AUTHORIZE):
                intent = IntentReq(
                    intent_hash=base64.b64encode(digest).decode(),
                    mint=mint,
                    payee_tag_hash=base64.b64encode(to_bytes32(amount_ct.payee_tag_hash)).decode(),
                    amount_ciphertext=base64.b64encode(amount_ct.ciphertext).decode(),
                    expiry_slot=str(expiry_slot),
                    circuit_id=self.cfg.circuit_id,
                    proof_hash=base64.b64encode(proof_hash).decode(),
                    payer=self.wallet.address,
                    signature=base64.b64encode(self.wallet.sign_message(domain.encode("utf-8") + digest)).decode(),
                    domain=domain,
                    relayer_pubkey=self.cfg.relayer_pubkey,
                )
                relayer_id = await self.relayer.post_intent(intent)

            with tracker.step(FlowStep.SUBMIT):
                signature = await self.submitter.send_direct([
                    ix.create_authorization(
                        pool, self.wallet.pubkey, digest, to_bytes32(amount_ct.payee_tag_hash),
                        amount_ct.ciphertext, expiry_slot, self.cfg.circuit_id, proof_hash, relayer_pubkey,
                    )
                ])
            with tracker.step(FlowStep.COMMIT):
                ns = Namespace(self.store, self.wallet.address, mint)
                with ns.transaction():
                    intents = ns.get("intents", {})
                    intents[digest.hex()] = {
                        "amount": amount,
                        "payee": str(payee),
                        "payee_tag_hash": str(amount_ct.payee_tag_hash),
                        "amount_ciphertext": base64.b64encode(amount_ct.ciphertext).decode(),
                        "expiry_slot": expiry_slot,
                        "settled": False,
                    }
                    ns.set("intents", intents)

        self._record(
            "create_authorization", signature, None, mint=mint, amount=amount,
            intent_hash=digest.hex(), expiry_slot=expiry_slot,
        )
        return AuthorizationResult(
            signature=signature,
            intent_hash=digest,
            relayer_id=relayer_id,
            expiry_slot=expiry_slot,
            amount_ciphertext=amount_ct.ciphertext,
        )

    def intents(self, mint: str) -> Dict[str, Dict[str, Any]]:
        return Namespace(self.store, self.wallet.address, mint).get("intents", {})

    async def settle_authorization(
        self, mint: str, intent_hash_hex: str, observer: Optional[StepObserver] = None
    ) -> SpendResult:
        stored = self.intents(mint).get(intent_hash_hex)
        if stored is None:
            raise KeyError(f"unknown intent {intent_hash_hex}")
        digest = bytes.fromhex(intent_hash_hex)
        pool = self.pool(mint)

        async def check_authorization() -> None:
            data = await self.rpc.get_account_info(pool.authorization(digest))
            if data is None:
                raise ChainRejection(f"Authorization {intent_hash_hex} not found on-chain")
            auth = accounts.Authorization.decode(data)
            if auth.settled:
                raise ChainRejection(f"Authorization {intent_hash_hex} is already settled")
            if await self.rpc.get_slot() > auth.expiry_slot:
                raise ChainRejection(f"Authorization {intent_hash_hex} expired at slot {auth.expiry_slot}")
            expected_ct = base64.b64decode(stored["amount_ciphertext"])
            recomputed = intent_hash(pool.mint, int(stored["payee_tag_hash"]), expected_ct, int(stored["expiry_slot"]))
            if (
                auth.intent_hash != digest
                or recomputed != digest
                or auth.amount_ciphertext != expected_ct
                or auth.mint != pool.mint
            ):
                raise ChainRejection(f"Authorization {intent_hash_hex} does not match the stored intent")

        def mark_settled() -> None:
            ns = Namespace(self.store, self.wallet.address, mint)
            intents = ns.get("intents", {})
            intents[intent_hash_hex]["settled"] = True
            ns.set("intents", intents)

        return await self._payout(
            "settle_authorization",
            mint,
            int(stored["amount"]),
            Pubkey.from_string(stored["payee"]),
            observer,
            intent=digest,
            precheck=check_authorization,
            on_commit=mark_settled,
        )

    async def recover_notes(
        self,
        mint: str,
        commitments: Sequence[int],
        published: Sequence[PublishedOutput],
        view_key_indices: Sequence[int] = (0,),
    ) -> int:
        """Rebuild local state from externally recovered leaves and their ciphertexts."""
        seed = derive_seed(self.wallet.sign_message(view_key_message(self.wallet.address)), b"view-key")
        keys = [view_keypair_from_seed(seed, i) for i in view_key_indices]
        async with self._lock(mint):
            state = await self.fetch_shielded_state(mint)
            if len(commitments) != state.commitment_count:
                raise Desync(f"Recovered {len(commitments)} leaves, chain has {state.commitment_count}")
            found = scan_notes(mint, keys, published)
            registry = self.nullifier_registry(mint)
            for note in found:
                note.spent = await registry.is_spent(note.nullifier())
            return self.notes(mint).rescan(list(commitments), found, state.root)

    async def rescan(
        self, mint: str, view_key_indices: Sequence[int] = (0,), max_signatures: Optional[int] = None
    ) -> int:
        """Rebuild the commitment list and owned notes from the pool's transaction history."""
        pool = self.pool(mint)
        history = await fetch_history(self.rpc, pool.shielded_state, self.program_id, max_signatures)
        leaves = pool_leaves(history, pool.shielded_state, pool.mint)
        published = [PublishedOutput(l.leaf_index, l.commitment, l.ciphertext) for l in leaves if l.ciphertext]
        logger.info("Rescanned %s: %d leaves, %d with ciphertexts", mint, len(leaves), len(published))
        return await self.recover_notes(mint, [l.commitment for l in leaves], published, view_key_indices)

    # ---- spend internals ----
    async def _spend_sync(self, mint: str) -> Tuple[accounts.ShieldedState, List[int]]:
        state = await self._sync(mint)
        await self.identity.ensure_registered()
        return state, self.notes(mint).commitments()

    def _witness(
        self,
        inputs: Sequence[Note],
        commitments: Sequence[int],
        outputs: Sequence[Optional[Note]],
        amount_out: int,
        fee_amount: int,
    ) -> Witness:
        return build_witness(
            inputs,
            commitments,
            outputs,
            sender_pubkey=self.view_keypair().pubkey,
            identity_secret=self.identity.secret(),
            identity_path=self.identity.identity_path(),
            amount_out=amount_out,
            fee_amount=fee_amount,
            circuit_id=self.cfg.circuit_id,
            depth=self.cfg.tree_depth,
            max_inputs=self.cfg.max_inputs,
            max_outputs=self.cfg.max_outputs,
        )

    async def _prove_and_verify(self, tracker: StepTracker, witness: Witness) -> ProofResult:
        with tracker.step(FlowStep.PROVE):
            proof = await self._prove(witness)
        with tracker.step(FlowStep.VERIFY):
            await self._verify(proof)
        return proof

    async def _submit_spend(
        self, tracker: StepTracker, mint: str, state: accounts.ShieldedState, instructions: List[Instruction]
    ) -> Tuple[str, str]:
        with tracker.step(FlowStep.SUBMIT):
            await self._recheck(mint, state)
            signature, mode = await self.submitter.send_relayed(instructions)
        with tracker.step(FlowStep.CONFIRM):
            await self.rpc.confirm_transaction(signature, timeout=self.cfg.confirm_timeout_sec)
        return signature, mode

    def _relayer_fee_ata(self, mint: Pubkey, fee_amount: int) -> Optional[Pubkey]:
        if fee_amount == 0:
            return None
        if not self.cfg.relayer_pubkey:
            raise ConfigError("A relayer fee is configured but VEILPAY_RELAYER_PUBKEY is not set")
        return ix.derive_ata(Pubkey.from_string(self.cfg.relayer_pubkey), mint)

    async def _payout(
        self,
        flow: str,
        mint: str,
        amount: int,
        recipient: Pubkey,
        observer: Optional[StepObserver],
        intent: Optional[bytes] = None,
        precheck=None,
        on_commit: Optional[Callable[[], None]] = None,
    ) -> SpendResult:
        if amount <= 0:
            raise ValueError(f"{flow} amount must be positive")
        tracker = self._tracker(flow, observer)
        fee_amount = amount * self.cfg.relayer_fee_bps // 10_000
        async with self._lock(mint):
            with tracker.step(FlowStep.SYNC):
                state, commitments = await self._spend_sync(mint)
                if precheck is not None:
                    await precheck()
            store = self.notes(mint)
            inputs, total = store.select_for_amount(amount, self.cfg.max_inputs)
            outputs: List[Optional[Note]] = [None, None]
            if total > amount:
                outputs[CHANGE_SLOT], _ = create_note(
                    mint, total - amount, self.view_keypair().pubkey, state.commitment_count
                )
            witness = self._witness(inputs, commitments, outputs, amount, fee_amount)
            proof = await self._prove_and_verify(tracker, witness)

            pool = self.pool(mint)
            with tracker.step(FlowStep.CHUNKS):
                chunks = await self.nullifier_registry(mint).ensure_chunks(
                    witness.nullifiers, self.cfg.nullifier_padding_chunks
                )
            new_leaves = [n.commitment for n in outputs if n is not None]
            new_root = build_tree(commitments + new_leaves, self.cfg.tree_depth)[0]

            destination = ix.derive_ata(recipient, pool.mint)
            fee_ata = self._relayer_fee_ata(pool.mint, fee_amount)
            instructions: List[Instruction] = []
            if not await self.rpc.account_exists(destination):
                instructions.append(
                    ix.create_ata_idempotent(self.submitter.relayer_fee_payer(), recipient, pool.mint)
                )
            args = (proof.proof_bytes, witness.public_inputs_bytes(), self.cfg.relayer_fee_bps, to_bytes32(new_root), chunks)
            if flow == "settle_authorization":
                instructions.append(ix.settle_authorization(pool, intent, destination, amount, *args, relayer_fee_ata=fee_ata))
            elif flow == "external_transfer":
                instructions.append(ix.external_transfer(pool, destination, amount, *args, relayer_fee_ata=fee_ata))
            else:
                instructions.append(ix.withdraw(pool, destination, amount, *args, relayer_fee_ata=fee_ata))

            signature, mode = await self._submit_spend(tracker, mint, state, instructions)
            change = outputs[CHANGE_SLOT]
            with tracker.step(FlowStep.COMMIT), store.ns.transaction():
                store.commit_flow(
                    [n.id for n in inputs], [change] if change else [], new_leaves, state.commitment_count
                )
                if on_commit is not None:
                    on_commit()

        result = SpendResult(
            signature=signature,
            relayer_mode=mode,
            amount=amount,
            fee_amount=fee_amount,
            spent_note_ids=[n.id for n in inputs],
            nullifiers=[n.nullifier() for n in inputs],
            new_root=new_root,
            change=change,
        )
        self._record(
            flow, signature, mode, mint=mint, amount=amount, fee_amount=fee_amount,
            recipient=str(recipient), spent=result.spent_note_ids,
        )
        return result
