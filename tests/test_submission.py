import asyncio
import base64
import json

import httpx
import pytest
from nacl.signing import VerifyKey
from solders.hash import Hash
from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from fakes import PROGRAM_ID, RELAYER, make_config
from services.api.config import ClientConfig, ConfigError
from services.api.rpc import LedgerRpc
from services.protocol import instructions as ix
from services.protocol.errors import ChainRejection, LedgerRpcError
from services.protocol.transactions import Submitter, compile_message, message_bytes, sign_partial
from services.protocol.wallet import KeypairWallet


# ---- ledger rpc ----
def _rpc(results):
    calls = []

    def handler(request):
        payload = json.loads(request.content)
        calls.append(payload)
        result = results[payload["method"]]
        if isinstance(result, Exception):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "error": {"message": str(result)}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})

    return LedgerRpc("http://rpc", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))), calls


def test_get_account_info_decodes_base64():
    rpc, calls = _rpc({"getAccountInfo": {"value": {"data": [base64.b64encode(b"abc").decode(), "base64"]}}})
    assert asyncio.run(rpc.get_account_info(PROGRAM_ID)) == b"abc"
    assert calls[0]["params"][0] == str(PROGRAM_ID)


def test_missing_account_is_none():
    rpc, _ = _rpc({"getAccountInfo": {"value": None}})
    assert asyncio.run(rpc.account_exists(PROGRAM_ID)) is False


def test_send_error_is_chain_rejection_other_errors_are_rpc_errors():
    rpc, _ = _rpc({"sendTransaction": ValueError("custom program error: 0x1"), "getSlot": ValueError("down")})
    with pytest.raises(ChainRejection) as ei:
        asyncio.run(rpc.send_raw_transaction(b"tx"))
    assert ei.value.body == {"message": "custom program error: 0x1"}
    with pytest.raises(LedgerRpcError):
        asyncio.run(rpc.get_slot())


def test_confirm_raises_on_transaction_error():
    rpc, _ = _rpc({"getSignatureStatuses": {"value": [{"err": {"InstructionError": [0, "Custom"]}}]}})
    with pytest.raises(ChainRejection):
        asyncio.run(rpc.confirm_transaction("sig"))


def test_confirm_returns_confirmed_status():
    rpc, _ = _rpc({"getSignatureStatuses": {"value": [{"err": None, "confirmationStatus": "finalized"}]}})
    assert asyncio.run(rpc.confirm_transaction("sig"))["confirmationStatus"] == "finalized"


def test_history_reads_page_before_signature():
    rpc, calls = _rpc({"getSignaturesForAddress": [{"signature": "s1", "err": None}], "getTransaction": None})
    assert asyncio.run(rpc.get_signatures_for_address(PROGRAM_ID, before="s9", limit=10)) == [
        {"signature": "s1", "err": None}
    ]
    assert asyncio.run(rpc.get_transaction("s1")) is None
    assert calls[0]["params"] == [str(PROGRAM_ID), {"limit": 10, "commitment": "confirmed", "before": "s9"}]
    assert calls[1]["params"][1]["maxSupportedTransactionVersion"] == 0


def test_transport_error_is_rpc_error():
    def handler(request):
        raise httpx.ConnectError("refused")

    rpc = LedgerRpc("http://rpc", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(LedgerRpcError):
        asyncio.run(rpc.get_slot())


# ---- signing ----
def _instruction(wallet: KeypairWallet):
    return ix.register_identity(PROGRAM_ID, wallet.pubkey, b"\x01" * 32, b"\x02" * 32)


def test_sign_partial_leaves_placeholders_for_missing_signers():
    wallet = KeypairWallet.generate()
    message = compile_message([_instruction(wallet)], RELAYER, Hash.default())
    tx = sign_partial(message, [wallet.keypair])
    assert tx.signatures[0] == Signature.default()
    assert tx.signatures[1] == wallet.keypair.sign_message(message_bytes(message))
    with pytest.raises(ValueError):
        sign_partial(message, [Keypair()])


class RecordingRpc:
    def __init__(self):
        self.sent = []
        self.confirmed = []

    async def get_latest_blockhash(self):
        return Hash.default()

    async def send_raw_transaction(self, raw, skip_preflight=False):
        self.sent.append(raw)
        return "direct-sig"

    async def confirm_transaction(self, signature, timeout=60.0):
        self.confirmed.append(signature)
        return {"confirmationStatus": "confirmed"}

    async def get_address_lookup_table(self, address):
        return None


class RecordingRelayer:
    def __init__(self):
        self.calls = []

    async def execute(self, transaction):
        self.calls.append(("execute", transaction, {}))
        return "signed-sig"

    async def execute_relayed(self, transaction):
        self.calls.append(("execute_relayed", transaction, {}))
        return "relayed-sig"

    async def execute_intent(self, transaction, **kw):
        self.calls.append(("execute_intent", transaction, kw))
        return "intent-sig"


def _submitter(mode: str):
    cfg = make_config(relayer_mode=mode)
    wallet = KeypairWallet.generate()
    rpc, relayer = RecordingRpc(), RecordingRelayer()
    return Submitter(cfg, rpc, relayer, wallet), rpc, relayer, wallet


def test_send_direct_signs_with_wallet_and_confirms():
    submitter, rpc, relayer, wallet = _submitter("unsigned")
    sig = asyncio.run(submitter.send_direct([_instruction(wallet)]))
    assert sig == "direct-sig"
    assert rpc.confirmed == ["direct-sig"]
    tx = VersionedTransaction.from_bytes(rpc.sent[0])
    assert tx.message.account_keys[0] == wallet.pubkey
    assert tx.signatures[0] != Signature.default()
    assert relayer.calls == []


def test_unsigned_mode_makes_relayer_fee_payer():
    submitter, rpc, relayer, wallet = _submitter("unsigned")
    sig, mode = asyncio.run(submitter.send_relayed([_instruction(wallet)]))
    assert (sig, mode) == ("relayed-sig", "unsigned")
    tx = VersionedTransaction.from_bytes(relayer.calls[0][1])
    assert tx.message.account_keys[0] == RELAYER
    assert rpc.confirmed == []


def test_signed_mode_wallet_pays_and_signs():
    submitter, _, relayer, wallet = _submitter("signed")
    _, mode = asyncio.run(submitter.send_relayed([_instruction(wallet)]))
    assert mode == "signed"
    name, raw, _ = relayer.calls[0]
    assert name == "execute"
    tx = VersionedTransaction.from_bytes(raw)
    assert tx.message.account_keys[0] == wallet.pubkey
    assert tx.signatures[0] != Signature.default()


def test_intent_mode_signs_intent_text():
    submitter, _, relayer, wallet = _submitter("intent")
    _, mode = asyncio.run(submitter.send_relayed([_instruction(wallet)]))
    assert mode == "intent"
    name, raw, kw = relayer.calls[0]
    assert name == "execute_intent"
    assert kw["signer"] == wallet.address
    lines = kw["message"].split("\n")
    assert lines[0] == "VeilPay relayer intent"
    assert lines[1] == f"signer:{wallet.address}"
    assert lines[3] == f"transaction:{base64.b64encode(raw).decode()}"
    VerifyKey(bytes(wallet.pubkey)).verify(kw["message"].encode(), kw["signature"])


def test_fee_payer_needs_relayer_pubkey():
    cfg = ClientConfig(program_id=str(PROGRAM_ID), verifier_program_id=str(RELAYER), relayer_mode="intent")
    submitter = Submitter(cfg, RecordingRpc(), RecordingRelayer(), KeypairWallet.generate())
    with pytest.raises(ConfigError):
        submitter.relayer_fee_payer()


def test_config_validation():
    with pytest.raises(ConfigError):
        make_config(relayer_mode="carrier-pigeon")
    with pytest.raises(ConfigError):
        make_config(relayer_fee_bps=10_000)
    with pytest.raises(ConfigError):
        ClientConfig(program_id=str(PROGRAM_ID), verifier_program_id="", relayer_mode="signed").validate()
    assert make_config().protocol_domain == f"VeilPay:v1:{PROGRAM_ID}:{make_config().cluster}"
