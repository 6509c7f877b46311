from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, conint


class _Wire(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True, extra="ignore")


# ===== Relayer =====
class ExecuteReq(_Wire):
    transaction: str = Field(..., description="Fully signed transaction (base64).")


class ExecuteRelayedReq(_Wire):
    transaction: str = Field(..., description="Transaction with the relayer as fee payer (base64).")
    message: Optional[str] = Field(None, description="Signed relayer intent text (intent mode only).")
    signature: Optional[str] = Field(None, description="ed25519 signature over `message` (base64).")
    signer: Optional[str] = Field(None, description="Intent signer address (base58).")
    lookup_table_addresses: Optional[List[str]] = Field(None, alias="lookupTableAddresses")


class RelayerRes(_Wire):
    signature: str = Field(..., description="Ledger transaction signature.")


class IntentReq(_Wire):
    intent_hash: str = Field(..., alias="intentHash", description="sha256 intent hash (base64, 32 bytes).")
    mint: str = Field(..., description="Asset mint (base58).")
    payee_tag_hash: str = Field(..., alias="payeeTagHash", description="Payee recipient tag (base64, 32 bytes).")
    amount_ciphertext: str = Field(..., alias="amountCiphertext", description="ECIES amount blob (base64, 128 bytes).")
    expiry_slot: str = Field(..., alias="expirySlot", description="Last slot at which the intent may settle.")
    circuit_id: conint(ge=0) = Field(..., alias="circuitId")
    proof_hash: str = Field(..., alias="proofHash", description="Opaque 32-byte proof binding (base64).")
    payer: str = Field(..., description="Payer address (base58).")
    signature: str = Field(..., description="ed25519 signature over domain || intentHash (base64).")
    domain: str = Field(..., description="VeilPay:v1:<program>:<cluster>")
    relayer_pubkey: Optional[str] = Field(None, alias="relayerPubkey")


class IntentRes(_Wire):
    id: str = Field(..., description="Echo of intentHash.")


# ===== Prover =====
class ProofReq(_Wire):
    input: Dict[str, object] = Field(..., description="Circuit input map; field elements as decimal strings.")
