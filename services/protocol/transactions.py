# services/protocol/transactions.py
"""
Transaction assembly and submission.

Two routes:
  * direct: the wallet pays and signs, the ledger RPC broadcasts. Used for
    deposits, chunk initialization, identity registration and authorization
    creation, where the wallet is a required signer anyway.
  * relayed: spend instructions, which carry no user signature (the proof is
    the authority), go through the relayer in the configured mode.
"""
from __future__ import annotations

import base64
import time
from typing import List, Optional, Sequence, Tuple, Union

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message, MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from services.api.config import ClientConfig, ConfigError
from services.api.logging_config import get_logger
from services.api.relayer import RelayerClient, relayer_intent_message
from services.api.rpc import LedgerRpc
from services.protocol.wallet import KeypairWallet

logger = get_logger("tx")

AnyMessage = Union[Message, MessageV0]


def compile_message(
    instructions: Sequence[Instruction],
    payer: Pubkey,
    blockhash: Hash,
    lookup_tables: Optional[Sequence[AddressLookupTableAccount]] = None,
) -> AnyMessage:
    if lookup_tables:
        return MessageV0.try_compile(payer, list(instructions), list(lookup_tables), blockhash)
    return Message.new_with_blockhash(list(instructions), payer, blockhash)


def message_bytes(message: AnyMessage) -> bytes:
    if isinstance(message, MessageV0):
        return to_bytes_versioned(message)
    return bytes(message)


def sign_partial(message: AnyMessage, signers: Sequence[Keypair]) -> VersionedTransaction:
    """
    Fill in the signatures we hold and leave the rest as zero placeholders
    for the relayer to complete.
    """
    required = message.header.num_required_signatures
    keys = list(message.account_keys[:required])
    sigs = [Signature.default()] * required
    payload = message_bytes(message)
    for kp in signers:
        try:
            idx = keys.index(kp.pubkey())
        except ValueError as e:
            raise ValueError(f"{kp.pubkey()} is not a signer of this transaction") from e
        sigs[idx] = kp.sign_message(payload)
    return VersionedTransaction.populate(message, sigs)


class Submitter:
    def __init__(
        self,
        cfg: ClientConfig,
        rpc: LedgerRpc,
        relayer: RelayerClient,
        wallet: KeypairWallet,
    ):
        self.cfg = cfg
        self.rpc = rpc
        self.relayer = relayer
        self.wallet = wallet
        self._lookup_tables: Optional[List[AddressLookupTableAccount]] = None

    async def lookup_tables(self) -> List[AddressLookupTableAccount]:
        if self._lookup_tables is None:
            tables: List[AddressLookupTableAccount] = []
            if self.cfg.lut_address:
                table = await self.rpc.get_address_lookup_table(Pubkey.from_string(self.cfg.lut_address))
                if table is None:
                    logger.warning("Lookup table %s not found; falling back to legacy transactions", self.cfg.lut_address)
                else:
                    tables.append(table)
            self._lookup_tables = tables
        return self._lookup_tables

    def relayer_fee_payer(self) -> Pubkey:
        if self.cfg.relayer_mode == "signed":
            return self.wallet.pubkey
        if not self.cfg.relayer_pubkey:
            raise ConfigError("Relayer fee payer unknown; set VEILPAY_RELAYER_PUBKEY")
        return Pubkey.from_string(self.cfg.relayer_pubkey)

    async def send_direct(
        self, instructions: Sequence[Instruction], use_lookup_table: bool = False, confirm: bool = True
    ) -> str:
        tables = await self.lookup_tables() if use_lookup_table else []
        blockhash = await self.rpc.get_latest_blockhash()
        message = compile_message(instructions, self.wallet.pubkey, blockhash, tables)
        tx = sign_partial(message, [self.wallet.keypair])
        signature = await self.rpc.send_raw_transaction(bytes(tx))
        logger.info("Sent transaction %s", signature)
        if confirm:
            await self.rpc.confirm_transaction(signature, timeout=self.cfg.confirm_timeout_sec)
        return signature

    async def send_relayed(self, instructions: Sequence[Instruction]) -> Tuple[str, str]:
        """Returns (signature, mode). The caller confirms."""
        mode = self.cfg.relayer_mode
        tables = await self.lookup_tables()
        payer = self.relayer_fee_payer()
        blockhash = await self.rpc.get_latest_blockhash()
        message = compile_message(instructions, payer, blockhash, tables)

        if mode == "signed":
            tx = sign_partial(message, [self.wallet.keypair])
            signature = await self.relayer.execute(bytes(tx))
        elif mode == "unsigned":
            tx = sign_partial(message, [])
            signature = await self.relayer.execute_relayed(bytes(tx))
        else:
            tx = sign_partial(message, [])
            raw = bytes(tx)
            expires_at = int(time.time() * 1000) + self.cfg.relayer_intent_ttl_ms
            lut_addresses = [str(t.key) for t in tables]
            text = relayer_intent_message(
                self.wallet.address, expires_at, base64.b64encode(raw).decode(), lut_addresses
            )
            signature = await self.relayer.execute_intent(
                raw,
                signer=self.wallet.address,
                message=text,
                signature=self.wallet.sign_message(text.encode("utf-8")),
                lookup_table_addresses=lut_addresses or None,
            )
        logger.info("Relayer (%s) submitted %s", mode, signature)
        return signature, mode
