# In-process stand-ins for the ledger, submitter, relayer and prover.
from __future__ import annotations

import struct
from typing import Dict, List, Optional, Sequence, Tuple

import base58
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from services.api.config import ClientConfig
from services.api.prover import ProofResult, Prover
from services.crypto_core.field import from_bytes32
from services.crypto_core.merkle import zero_hashes
from services.database.kv import MemoryStore
from services.protocol import instructions as ix
from services.protocol import pda
from services.protocol.accounts import NULLIFIER_BYTES, account_discriminator
from services.protocol.errors import ChainRejection
from services.protocol.flows import VeilPayClient
from services.protocol.nullifiers import bit_index, chunk_index
from services.protocol.wallet import KeypairWallet

DEPTH = 20
PROGRAM_ID = Pubkey.from_string("4C6H1aqxks1AgjtsLPbNrDXFsb6DwQ6c1Jhw2ZugTLv2")
VERIFIER_ID = Keypair().pubkey()
RELAYER = Keypair().pubkey()


def make_config(**overrides) -> ClientConfig:
    cfg = ClientConfig(
        program_id=str(PROGRAM_ID),
        verifier_program_id=str(VERIFIER_ID),
        relayer_mode="unsigned",
        relayer_pubkey=str(RELAYER),
        relayer_fee_bps=0,
        tree_depth=DEPTH,
        lut_address=None,
        prover_timeout_sec=5,
        verify_timeout_sec=5,
    )
    for k, v in overrides.items():
        setattr(cfg, k, v)
    cfg.validate()
    return cfg


# ---- account encoders (inverse of services.protocol.accounts) ----
def encode_shielded(mint: Pubkey, root: bytes, count: int) -> bytes:
    return (
        account_discriminator("ShieldedState")
        + bytes(mint) + root
        + struct.pack("<I", 0)
        + struct.pack("<I", 0)
        + struct.pack("<Q", count)
        + struct.pack("<I", 0)
        + struct.pack("<I", 1)
        + bytes([255])
    )


def encode_identity(root: bytes, count: int) -> bytes:
    return account_discriminator("IdentityRegistry") + root + struct.pack("<Q", count) + bytes([255])


def encode_nullifier_set(mint: Pubkey, chunk: int, bitset: bytes, count: int) -> bytes:
    return (
        account_discriminator("NullifierSet")
        + bytes(mint) + struct.pack("<I", chunk) + bitset + struct.pack("<I", count) + bytes([255])
    )


def encode_authorization(
    intent_hash: bytes, payee_tag: bytes, mint: Pubkey, ct: bytes, expiry: int, circuit_id: int,
    proof_hash: bytes, payer: Pubkey, relayer: Pubkey, status: int = 0,
) -> bytes:
    return (
        account_discriminator("Authorization")
        + intent_hash + payee_tag + bytes(mint) + ct
        + struct.pack("<Q", expiry) + struct.pack("<I", circuit_id)
        + proof_hash + bytes(payer) + bytes(relayer) + bytes([status, 255])
    )


class _Cursor:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 8

    def take(self, n: int) -> bytes:
        out = self.data[self.pos:self.pos + n]
        self.pos += n
        return out

    def vec(self) -> bytes:
        (n,) = struct.unpack("<I", self.take(4))
        return self.take(n)

    def u64(self) -> int:
        return struct.unpack("<Q", self.take(8))[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def u16(self) -> int:
        return struct.unpack("<H", self.take(2))[0]


class FakeLedger:
    """Account store plus just enough of the pool program to apply our instructions."""

    def __init__(self, mint: Pubkey, depth: int = DEPTH):
        self.mint = mint
        self.accounts: Dict[Pubkey, bytes] = {}
        self.slot = 1_000
        self.failed: Dict[str, str] = {}
        self.confirmed: List[str] = []
        self.applied: List[Tuple[str, dict]] = []
        # signature -> getTransaction-shaped json, in landing order
        self.transactions: Dict[str, dict] = {}
        self._signatures = 0
        empty = zero_hashes(depth)[depth].to_bytes(32, "big")
        self.shielded = pda.derive_shielded(PROGRAM_ID, mint)
        self.identity = pda.derive_identity_registry(PROGRAM_ID)
        self.set_shielded(empty, 0)
        self.accounts[self.identity] = encode_identity(empty, 0)

    # ---- rpc surface ----
    async def get_account_info(self, pubkey: Pubkey) -> Optional[bytes]:
        return self.accounts.get(pubkey)

    async def account_exists(self, pubkey: Pubkey) -> bool:
        return pubkey in self.accounts

    async def get_slot(self) -> int:
        return self.slot

    async def confirm_transaction(self, signature: str, timeout: float = 60.0) -> dict:
        if signature in self.failed:
            raise ChainRejection(f"Transaction {signature} failed: {self.failed[signature]}",
                                 body={"InstructionError": [0, self.failed[signature]]})
        self.confirmed.append(signature)
        return {"confirmationStatus": "confirmed"}

    async def get_signatures_for_address(self, address: Pubkey, before: Optional[str] = None, limit: int = 1000):
        newest_first = [
            sig for sig, tx in reversed(list(self.transactions.items()))
            if str(address) in tx["transaction"]["message"]["accountKeys"]
        ]
        if before is not None:
            newest_first = newest_first[newest_first.index(before) + 1:]
        return [
            {"signature": sig, "slot": self.transactions[sig]["slot"],
             "err": self.transactions[sig]["meta"]["err"]}
            for sig in newest_first[:limit]
        ]

    async def get_transaction(self, signature: str) -> Optional[dict]:
        return self.transactions.get(signature)

    def record(self, signature: str, fee_payer: Pubkey, instructions: Sequence[Instruction], logs=()) -> None:
        """Store a landed transaction the way the node returns it (json encoding)."""
        keys: List[str] = [str(fee_payer)]
        for instruction in instructions:
            for key in [m.pubkey for m in instruction.accounts] + [instruction.program_id]:
                if str(key) not in keys:
                    keys.append(str(key))
        err = self.failed.get(signature)
        self.transactions[signature] = {
            "slot": self.slot,
            "meta": {"err": {"InstructionError": [0, err]} if err else None, "logMessages": list(logs)},
            "transaction": {
                "signatures": [signature],
                "message": {
                    "accountKeys": keys,
                    "instructions": [
                        {
                            "programIdIndex": keys.index(str(instruction.program_id)),
                            "accounts": [keys.index(str(m.pubkey)) for m in instruction.accounts],
                            "data": base58.b58encode(bytes(instruction.data)).decode(),
                        }
                        for instruction in instructions
                    ],
                },
            },
        }

    def next_signature(self) -> str:
        self._signatures += 1
        return f"sig{self._signatures}"

    # ---- state helpers ----
    def set_shielded(self, root: bytes, count: int) -> None:
        self.accounts[self.shielded] = encode_shielded(self.mint, root, count)

    def shielded_state(self) -> Tuple[bytes, int]:
        data = self.accounts[self.shielded]
        root = data[40:72]
        count = struct.unpack_from("<Q", data, 80)[0]
        return root, count

    def identity_state(self) -> Tuple[bytes, int]:
        data = self.accounts[self.identity]
        return data[8:40], struct.unpack_from("<Q", data, 40)[0]

    def _mark_nullifiers(self, nullifiers: Sequence[int]) -> Optional[str]:
        for n in nullifiers:
            if n == 0:
                continue
            address = pda.derive_nullifier_set(PROGRAM_ID, self.mint, chunk_index(n))
            data = self.accounts.get(address)
            if data is None:
                return "NullifierChunkMissing"
            bit = bit_index(n)
            bitset = bytearray(data[44:44 + NULLIFIER_BYTES])
            if bitset[bit // 8] & (1 << (bit % 8)):
                return "NullifierAlreadyUsed"
        for n in nullifiers:
            if n == 0:
                continue
            c = chunk_index(n)
            address = pda.derive_nullifier_set(PROGRAM_ID, self.mint, c)
            data = self.accounts[address]
            bit = bit_index(n)
            bitset = bytearray(data[44:44 + NULLIFIER_BYTES])
            bitset[bit // 8] |= 1 << (bit % 8)
            count = struct.unpack_from("<I", data, 44 + NULLIFIER_BYTES)[0] + 1
            self.accounts[address] = encode_nullifier_set(self.mint, c, bytes(bitset), count)
        return None

    def _apply_spend(self, public_inputs: bytes, new_root: bytes) -> Optional[str]:
        words = [from_bytes32(public_inputs[i:i + 32]) for i in range(0, len(public_inputs), 32)]
        if len(words) != 13:
            return "InvalidPublicInputs"
        root, count = self.shielded_state()
        if from_bytes32(root) != words[0]:
            return "UnknownRoot"
        err = self._mark_nullifiers(words[2:6])
        if err:
            return err
        self.set_shielded(new_root, count + sum(words[8:10]))
        return None

    def apply(self, instruction: Instruction, signature: str) -> None:
        data = bytes(instruction.data)
        if instruction.program_id == ix.ASSOCIATED_TOKEN_PROGRAM_ID:
            self.accounts[instruction.accounts[1].pubkey] = b"ata"
            self.applied.append(("create_ata", {}))
            return
        disc = data[:8]
        cur = _Cursor(data)
        err: Optional[str] = None
        if disc == ix.instruction_discriminator("deposit"):
            amount = cur.u64()
            ct, commitment, new_root = cur.vec(), cur.vec(), cur.vec()
            _, count = self.shielded_state()
            self.set_shielded(new_root, count + 1)
            self.applied.append(("deposit", {"amount": amount, "commitment": commitment, "ciphertext": ct}))
        elif disc == ix.instruction_discriminator("initialize_nullifier_chunk"):
            c = cur.u32()
            address = pda.derive_nullifier_set(PROGRAM_ID, self.mint, c)
            if address in self.accounts:
                err = "already in use"
            else:
                self.accounts[address] = encode_nullifier_set(self.mint, c, bytes(NULLIFIER_BYTES), 0)
                self.applied.append(("initialize_nullifier_chunk", {"chunk": c}))
        elif disc == ix.instruction_discriminator("register_identity"):
            commitment, new_root = cur.vec(), cur.vec()
            _, count = self.identity_state()
            self.accounts[self.identity] = encode_identity(new_root, count + 1)
            self.applied.append(("register_identity", {"commitment": commitment}))
        elif disc in (
            ix.instruction_discriminator("withdraw"),
            ix.instruction_discriminator("external_transfer"),
            ix.instruction_discriminator("settle_authorization"),
        ):
            amount = cur.u64()
            proof, public_inputs = cur.vec(), cur.vec()
            bps = cur.u16()
            new_root = cur.vec()
            if disc == ix.instruction_discriminator("settle_authorization"):
                auth_address = instruction.accounts[1].pubkey
                auth = self.accounts.get(auth_address)
                if auth is None or auth[-2] == 1:
                    err = "AuthorizationUnavailable"
                else:
                    self.accounts[auth_address] = auth[:-2] + bytes([1, auth[-1]])
            err = err or self._apply_spend(public_inputs, new_root)
            self.applied.append(("spend", {"amount": amount, "bps": bps, "public_inputs": public_inputs,
                                           "accounts": list(instruction.accounts)}))
        elif disc == ix.instruction_discriminator("internal_transfer"):
            proof, public_inputs, new_root = cur.vec(), cur.vec(), cur.vec()
            err = self._apply_spend(public_inputs, new_root)
            self.applied.append(("internal_transfer", {"public_inputs": public_inputs}))
        elif disc == ix.instruction_discriminator("create_authorization"):
            intent, payee_tag = cur.vec(), cur.vec()
            mint = Pubkey.from_bytes(cur.take(32))
            ct = cur.vec()
            expiry, circuit = cur.u64(), cur.u32()
            proof_hash = cur.vec()
            relayer = Pubkey.from_bytes(cur.take(32))
            payer = instruction.accounts[2].pubkey
            self.accounts[instruction.accounts[1].pubkey] = encode_authorization(
                intent, payee_tag, mint, ct, expiry, circuit, proof_hash, payer, relayer
            )
            self.applied.append(("create_authorization", {"intent_hash": intent}))
        else:
            err = "UnknownInstruction"
        if err:
            self.failed[signature] = err


class FakeSubmitter:
    """Applies instructions straight to the FakeLedger; records every send."""

    def __init__(self, ledger: FakeLedger, wallet: KeypairWallet):
        self.ledger = ledger
        self.wallet = wallet
        self.sent: List[Tuple[str, List[Instruction]]] = []
    def _sign(self) -> str:
        return self.ledger.next_signature()

    def relayer_fee_payer(self) -> Pubkey:
        return RELAYER

    async def send_direct(self, instructions, use_lookup_table: bool = False, confirm: bool = True) -> str:
        signature = self._sign()
        self.sent.append(("direct", list(instructions)))
        for instruction in instructions:
            self.ledger.apply(instruction, signature)
        self.ledger.record(signature, self.wallet.pubkey, instructions)
        if confirm:
            await self.ledger.confirm_transaction(signature)
        return signature

    async def send_relayed(self, instructions) -> Tuple[str, str]:
        signature = self._sign()
        self.sent.append(("relayed", list(instructions)))
        for instruction in instructions:
            self.ledger.apply(instruction, signature)
        self.ledger.record(signature, RELAYER, instructions)
        return signature, "unsigned"


class FakeProver(Prover):
    """Echoes the public signals the circuit would output; verify answers `valid`."""

    def __init__(self, valid: bool = True):
        self.valid = valid
        self.prove_calls = 0
        self.verify_calls = 0

    async def prove(self, inputs) -> ProofResult:
        self.prove_calls += 1
        signals = [
            int(inputs["root"]),
            int(inputs["identity_root"]),
            *(int(x) for x in inputs["nullifier"]),
            *(int(x) for x in inputs["output_commitment"]),
            *(int(x) for x in inputs["output_enabled"]),
            int(inputs["amount_out"]),
            int(inputs["fee_amount"]),
            int(inputs["circuit_id"]),
        ]
        proof = {"pi_a": ["1", "2", "1"], "pi_b": [["3", "4"], ["5", "6"], ["1", "0"]], "pi_c": ["7", "8", "1"]}
        return ProofResult(proof=proof, public_signals=signals)

    async def verify(self, proof, public_signals) -> bool:
        self.verify_calls += 1
        return self.valid


class FakeRelayer:
    def __init__(self):
        self.intents = []

    async def post_intent(self, intent) -> str:
        self.intents.append(intent)
        return intent.intent_hash


def make_client(
    ledger: FakeLedger,
    wallet: Optional[KeypairWallet] = None,
    store: Optional[MemoryStore] = None,
    prover: Optional[FakeProver] = None,
    **cfg_overrides,
) -> Tuple[VeilPayClient, FakeSubmitter]:
    wallet = wallet or KeypairWallet.generate()
    submitter = FakeSubmitter(ledger, wallet)
    client = VeilPayClient(
        make_config(**cfg_overrides),
        wallet,
        store if store is not None else MemoryStore(),
        ledger,
        FakeRelayer(),
        prover or FakeProver(),
        submitter=submitter,
    )
    return client, submitter
