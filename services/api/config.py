# services/api/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from services.protocol.errors import VeilPayError

# ===== Environment =====
RPC_URL: str = os.getenv("VEILPAY_RPC_URL", "http://127.0.0.1:8899")
RELAYER_URL: str = os.getenv("VEILPAY_RELAYER_URL", "http://127.0.0.1:8787")
PROVER_URL: str = os.getenv("VEILPAY_PROVER_URL", "")

# local snarkjs proving, used when PROVER_URL is empty
WASM_PATH: str = os.getenv("VEILPAY_WASM_PATH", "")
ZKEY_PATH: str = os.getenv("VEILPAY_ZKEY_PATH", "")
VKEY_PATH: str = os.getenv("VEILPAY_VKEY_PATH", "")

VEILPAY_PROGRAM_ID: str = os.getenv("VEILPAY_PROGRAM_ID", "4C6H1aqxks1AgjtsLPbNrDXFsb6DwQ6c1Jhw2ZugTLv2")
VERIFIER_PROGRAM_ID: str = os.getenv("VEILPAY_VERIFIER_PROGRAM_ID", "")
LUT_ADDRESS: str = os.getenv("VEILPAY_LUT_ADDRESS", "")

TREE_DEPTH: int = int(os.getenv("VEILPAY_TREE_DEPTH", "20"))
MAX_INPUTS: int = 4
MAX_OUTPUTS: int = 2
CIRCUIT_ID: int = int(os.getenv("VEILPAY_CIRCUIT_ID", "0"))
VERIFIER_KEY_ID: int = int(os.getenv("VEILPAY_VERIFIER_KEY_ID", "0"))

PROVER_TIMEOUT_SEC: float = float(os.getenv("VEILPAY_PROVER_TIMEOUT_SEC", "120"))
VERIFY_TIMEOUT_SEC: float = float(os.getenv("VEILPAY_VERIFY_TIMEOUT_SEC", "8"))
HTTP_TIMEOUT_SEC: float = float(os.getenv("VEILPAY_HTTP_TIMEOUT_SEC", "15"))
CONFIRM_TIMEOUT_SEC: float = float(os.getenv("VEILPAY_CONFIRM_TIMEOUT_SEC", "60"))

# signed | unsigned | intent
RELAYER_MODE: str = os.getenv("VEILPAY_RELAYER_MODE", "intent")
RELAYER_PUBKEY: str = os.getenv("VEILPAY_RELAYER_PUBKEY", "")
RELAYER_FEE_BPS: int = int(os.getenv("VEILPAY_RELAYER_FEE_BPS", "0"))
RELAYER_INTENT_TTL_MS: int = int(os.getenv("VEILPAY_RELAYER_INTENT_TTL_MS", "120000"))
NULLIFIER_PADDING_CHUNKS: int = int(os.getenv("VEILPAY_NULLIFIER_PADDING_CHUNKS", "0"))
AUTH_EXPIRY_SLOTS: int = int(os.getenv("VEILPAY_AUTH_EXPIRY_SLOTS", "1500"))

PROTOCOL_NAME: str = "VeilPay"
CLUSTER: str = os.getenv("VEILPAY_CLUSTER", "localnet")

DATA_DIR: Path = Path(os.getenv("VEILPAY_DATA_DIR", "./data"))
# json | sqlite
STORE_BACKEND: str = os.getenv("VEILPAY_STORE_BACKEND", "json")
VERBOSE: bool = bool(int(os.getenv("VERBOSE", "0")))


class ConfigError(VeilPayError):
    """Raised when a required setting is missing or malformed."""


@dataclass
class ClientConfig:
    rpc_url: str = RPC_URL
    relayer_url: str = RELAYER_URL
    prover_url: str = PROVER_URL
    wasm_path: str = WASM_PATH
    zkey_path: str = ZKEY_PATH
    vkey_path: str = VKEY_PATH
    program_id: str = VEILPAY_PROGRAM_ID
    verifier_program_id: str = VERIFIER_PROGRAM_ID
    lut_address: Optional[str] = LUT_ADDRESS or None
    tree_depth: int = TREE_DEPTH
    max_inputs: int = MAX_INPUTS
    max_outputs: int = MAX_OUTPUTS
    circuit_id: int = CIRCUIT_ID
    verifier_key_id: int = VERIFIER_KEY_ID
    prover_timeout_sec: float = PROVER_TIMEOUT_SEC
    verify_timeout_sec: float = VERIFY_TIMEOUT_SEC
    http_timeout_sec: float = HTTP_TIMEOUT_SEC
    confirm_timeout_sec: float = CONFIRM_TIMEOUT_SEC
    relayer_mode: str = RELAYER_MODE
    relayer_pubkey: Optional[str] = RELAYER_PUBKEY or None
    relayer_fee_bps: int = RELAYER_FEE_BPS
    relayer_intent_ttl_ms: int = RELAYER_INTENT_TTL_MS
    nullifier_padding_chunks: int = NULLIFIER_PADDING_CHUNKS
    auth_expiry_slots: int = AUTH_EXPIRY_SLOTS
    cluster: str = CLUSTER
    data_dir: Path = field(default_factory=lambda: DATA_DIR)
    store_backend: str = STORE_BACKEND

    @classmethod
    def from_env(cls) -> "ClientConfig":
        cfg = cls()
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.relayer_mode not in ("signed", "unsigned", "intent"):
            raise ConfigError(f"Unknown relayer mode: {self.relayer_mode!r}")
        if self.relayer_mode == "unsigned" and not self.relayer_pubkey:
            raise ConfigError("Unsigned relayer mode needs VEILPAY_RELAYER_PUBKEY (the fee payer)")
        if not self.program_id:
            raise ConfigError("Missing required env: VEILPAY_PROGRAM_ID")
        if not self.verifier_program_id:
            raise ConfigError("Missing required env: VEILPAY_VERIFIER_PROGRAM_ID")
        if not (1 <= self.tree_depth <= 32):
            raise ConfigError(f"Tree depth out of range: {self.tree_depth}")
        if not (0 <= self.relayer_fee_bps < 10_000):
            raise ConfigError(f"Relayer fee bps out of range: {self.relayer_fee_bps}")
        if self.store_backend not in ("json", "sqlite"):
            raise ConfigError(f"Unknown store backend: {self.store_backend!r}")

    @property
    def protocol_domain(self) -> str:
        return f"{PROTOCOL_NAME}:v1:{self.program_id}:{self.cluster}"
