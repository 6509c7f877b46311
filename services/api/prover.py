# services/api/prover.py
"""
External Groth16 prover / verifier clients.

The circuit is a black box: `prove(inputs)` takes the string-keyed circuit
input map and returns the proof plus its public signals; `verify(proof,
public_signals)` runs the verification key locally (snarkjs) or remotely.
Callers bound both with asyncio.wait_for.
"""
from __future__ import annotations

import asyncio
import json
import shlex
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from services.api.config import ConfigError
from services.api.logging_config import get_logger
from services.api.schemas_api import ProofReq
from services.crypto_core.field import to_bytes32
from services.protocol.errors import ProofFailure

logger = get_logger("prover")


@dataclass(frozen=True)
class ProofResult:
    proof: Dict[str, Any]
    public_signals: List[int]

    @property
    def proof_bytes(self) -> bytes:
        return proof_to_bytes(self.proof)

    @property
    def public_inputs_bytes(self) -> bytes:
        return b"".join(to_bytes32(s) for s in self.public_signals)


def proof_to_bytes(proof: Dict[str, Any]) -> bytes:
    """pi_a, pi_b, pi_c as 8 x 32-byte big-endian words (projective z dropped)."""
    try:
        a = proof["pi_a"]
        b = proof["pi_b"]
        c = proof["pi_c"]
        words = [a[0], a[1], b[0][0], b[0][1], b[1][0], b[1][1], c[0], c[1]]
        return b"".join(int(w).to_bytes(32, "big") for w in words)
    except (KeyError, IndexError, TypeError, ValueError, OverflowError) as e:
        raise ProofFailure(f"Malformed proof object: {e}") from e


def _parse_result(body: Dict[str, Any]) -> ProofResult:
    proof = body.get("proof")
    signals = body.get("publicSignals", body.get("public_signals"))
    if not isinstance(proof, dict) or not isinstance(signals, list):
        raise ProofFailure("Prover response is missing proof or publicSignals")
    try:
        return ProofResult(proof=proof, public_signals=[int(s) for s in signals])
    except (TypeError, ValueError) as e:
        raise ProofFailure(f"Prover returned non-integer public signals: {e}") from e


class Prover:
    async def prove(self, inputs: Dict[str, Any]) -> ProofResult:
        raise NotImplementedError

    async def verify(self, proof: Dict[str, Any], public_signals: List[int]) -> bool:
        raise NotImplementedError


class HttpProver(Prover):
    """Proving service speaking POST /proof {"input": {...}} and POST /verify."""

    def __init__(self, url: str, timeout: float = 120.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            if self._client is not None:
                r = await self._client.post(f"{self.url}{path}", json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    r = await client.post(f"{self.url}{path}", json=payload)
        except httpx.HTTPError as e:
            raise ProofFailure(f"Prover request {path} failed: {e}") from e
        if r.status_code != 200:
            raise ProofFailure(f"Prover {path} returned {r.status_code}: {r.text}")
        try:
            return r.json()
        except ValueError as e:
            raise ProofFailure(f"Prover {path} returned invalid JSON") from e

    async def prove(self, inputs: Dict[str, Any]) -> ProofResult:
        body = await self._post("/proof", ProofReq(input=inputs).model_dump())
        return _parse_result(body)

    async def verify(self, proof: Dict[str, Any], public_signals: List[int]) -> bool:
        body = await self._post("/verify", {"proof": proof, "publicSignals": [str(s) for s in public_signals]})
        return bool(body.get("ok", body.get("valid", False)))


class SnarkjsProver(Prover):
    """Runs the snarkjs CLI against local wasm / zkey / verification key files."""

    def __init__(self, wasm_path: Path, zkey_path: Path, vkey_path: Path, snarkjs: str = "snarkjs"):
        self.wasm_path = Path(wasm_path)
        self.zkey_path = Path(zkey_path)
        self.vkey_path = Path(vkey_path)
        self.snarkjs = snarkjs

    async def _run(self, args: List[str]) -> tuple:
        cmd = [self.snarkjs, *args]
        printable = " ".join(shlex.quote(x) for x in cmd)
        logger.debug("$ %s", printable)
        try:
            p = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ProofFailure(f"Cannot start {self.snarkjs}: {e}") from e
        try:
            out, err = await p.communicate()
        except asyncio.CancelledError:
            p.kill()
            raise
        return p.returncode, (out or b"").decode().strip(), (err or b"").decode().strip()

    async def prove(self, inputs: Dict[str, Any]) -> ProofResult:
        with tempfile.TemporaryDirectory(prefix="veilpay-proof-") as tmp:
            work = Path(tmp)
            (work / "input.json").write_text(json.dumps(inputs))
            rc, out, err = await self._run([
                "groth16", "fullprove",
                str(work / "input.json"), str(self.wasm_path), str(self.zkey_path),
                str(work / "proof.json"), str(work / "public.json"),
            ])
            if rc != 0:
                raise ProofFailure(f"snarkjs fullprove failed (rc={rc}): {err or out}")
            proof = json.loads((work / "proof.json").read_text())
            signals = json.loads((work / "public.json").read_text())
        return _parse_result({"proof": proof, "publicSignals": signals})

    async def verify(self, proof: Dict[str, Any], public_signals: List[int]) -> bool:
        with tempfile.TemporaryDirectory(prefix="veilpay-verify-") as tmp:
            work = Path(tmp)
            (work / "proof.json").write_text(json.dumps(proof))
            (work / "public.json").write_text(json.dumps([str(s) for s in public_signals]))
            rc, out, err = await self._run([
                "groth16", "verify", str(self.vkey_path), str(work / "public.json"), str(work / "proof.json"),
            ])
        if rc != 0:
            logger.info("snarkjs verify rejected proof: %s", err or out)
            return False
        return "OK" in out


def make_prover(cfg) -> Prover:
    """HTTP proving service when VEILPAY_PROVER_URL is set, local snarkjs otherwise."""
    if cfg.prover_url:
        return HttpProver(cfg.prover_url, timeout=cfg.prover_timeout_sec)
    if cfg.wasm_path and cfg.zkey_path and cfg.vkey_path:
        return SnarkjsProver(cfg.wasm_path, cfg.zkey_path, cfg.vkey_path)
    raise ConfigError("Set VEILPAY_PROVER_URL or VEILPAY_WASM_PATH/VEILPAY_ZKEY_PATH/VEILPAY_VKEY_PATH")
