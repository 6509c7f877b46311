#!/usr/bin/env python3
"""
Connectivity checks for the ledger RPC, the relayer and the prover
"""
import asyncio
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict

import httpx

from services.api.config import ClientConfig
from services.api.logging_config import get_logger
from services.api.rpc import LedgerRpc
from services.protocol.errors import LedgerRpcError

logger = get_logger("health")


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)


async def check_rpc_health(rpc_url: str, timeout: float = 5.0) -> Dict[str, Any]:
    """
    Ledger node health via getHealth

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    start = time.monotonic()
    try:
        async with LedgerRpc(rpc_url, timeout=timeout) as rpc:
            node = await rpc.get_health()
    except LedgerRpcError as e:
        logger.error(f"Ledger RPC unreachable at {rpc_url}: {e}")
        return {"status": "unhealthy", "error": str(e), "url": rpc_url}
    return {
        "status": "healthy" if node == "ok" else "unhealthy",
        "node": node,
        "response_time_ms": _elapsed_ms(start),
        "url": rpc_url,
    }


async def check_http_service(name: str, url: str, timeout: float = 5.0) -> Dict[str, Any]:
    """GET <url>/health; any 2xx counts as healthy."""
    start = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(f"{url.rstrip('/')}/health")
    except httpx.HTTPError as e:
        logger.error(f"{name} unreachable at {url}: {e}")
        return {"status": "unhealthy", "error": str(e), "url": url}
    return {
        "status": "healthy" if response.is_success else "unhealthy",
        "code": response.status_code,
        "response_time_ms": _elapsed_ms(start),
        "url": url,
    }


def check_local_prover(cfg: ClientConfig) -> Dict[str, Any]:
    missing = [p for p in (cfg.wasm_path, cfg.zkey_path, cfg.vkey_path) if not p or not os.path.exists(p)]
    if missing:
        return {"status": "unhealthy", "error": f"missing circuit files: {missing}"}
    return {"status": "healthy", "mode": "snarkjs"}


async def comprehensive_health_check(cfg: ClientConfig) -> Dict[str, Any]:
    """Check every external dependency concurrently; overall status is the worst component."""
    pending = {
        "rpc": check_rpc_health(cfg.rpc_url, cfg.http_timeout_sec),
        "relayer": check_http_service("relayer", cfg.relayer_url, cfg.http_timeout_sec),
    }
    if cfg.prover_url:
        pending["prover"] = check_http_service("prover", cfg.prover_url, cfg.http_timeout_sec)
    results = await asyncio.gather(*pending.values())
    checks: Dict[str, Any] = dict(zip(pending, results))
    if not cfg.prover_url:
        checks["prover"] = check_local_prover(cfg)

    healthy = all(c["status"] == "healthy" for c in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "checks": checks,
    }
