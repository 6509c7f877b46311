# services/api/rpc.py
"""
Async JSON-RPC client for the ledger.

Thin wrapper over httpx: every call is a single POST with the configured
timeout. Transport failures and JSON-RPC error objects become
LedgerRpcError; transaction failures reported by the ledger become
ChainRejection with the raw error attached.
"""
from __future__ import annotations

import asyncio
import base64
import itertools
import time
from typing import Any, Dict, List, Optional

import httpx
from solders.address_lookup_table_account import AddressLookupTable, AddressLookupTableAccount
from solders.hash import Hash
from solders.pubkey import Pubkey

from services.api.logging_config import get_logger
from services.protocol.errors import ChainRejection, LedgerRpcError

logger = get_logger("rpc")

COMMITMENT = "confirmed"


class LedgerRpc:
    def __init__(self, url: str, timeout: float = 15.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "LedgerRpc":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            r = await self._http().post(self.url, json=payload)
            r.raise_for_status()
            body = r.json()
        except httpx.HTTPError as e:
            raise LedgerRpcError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise LedgerRpcError(f"{method} returned invalid JSON") from e
        if "error" in body:
            err = body["error"]
            if method == "sendTransaction":
                raise ChainRejection(f"Transaction rejected: {err.get('message', err)}", body=err)
            raise LedgerRpcError(f"{method} error: {err.get('message', err)}", body=err)
        return body.get("result")

    # ---- reads ----
    async def get_account_info(self, pubkey: Pubkey) -> Optional[bytes]:
        res = await self.call("getAccountInfo", [str(pubkey), {"encoding": "base64", "commitment": COMMITMENT}])
        value = (res or {}).get("value")
        if not value:
            return None
        data = value.get("data") or ["", "base64"]
        return base64.b64decode(data[0])

    async def account_exists(self, pubkey: Pubkey) -> bool:
        return (await self.get_account_info(pubkey)) is not None

    async def get_latest_blockhash(self) -> Hash:
        res = await self.call("getLatestBlockhash", [{"commitment": COMMITMENT}])
        return Hash.from_string(res["value"]["blockhash"])

    async def get_slot(self) -> int:
        return int(await self.call("getSlot", [{"commitment": COMMITMENT}]))

    async def get_address_lookup_table(self, address: Pubkey) -> Optional[AddressLookupTableAccount]:
        data = await self.get_account_info(address)
        if data is None:
            return None
        table = AddressLookupTable.deserialize(data)
        return AddressLookupTableAccount(key=address, addresses=list(table.addresses))

    async def get_signatures_for_address(
        self, address: Pubkey, before: Optional[str] = None, limit: int = 1000
    ) -> List[Dict[str, Any]]:
        """Newest first, at most `limit` entries older than `before`."""
        opts: Dict[str, Any] = {"limit": limit, "commitment": COMMITMENT}
        if before:
            opts["before"] = before
        return await self.call("getSignaturesForAddress", [str(address), opts]) or []

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        opts = {"encoding": "json", "commitment": COMMITMENT, "maxSupportedTransactionVersion": 0}
        return await self.call("getTransaction", [signature, opts])

    # ---- writes ----
    async def send_raw_transaction(self, raw: bytes, skip_preflight: bool = False) -> str:
        encoded = base64.b64encode(raw).decode("ascii")
        opts = {"encoding": "base64", "skipPreflight": skip_preflight, "preflightCommitment": COMMITMENT}
        return await self.call("sendTransaction", [encoded, opts])

    async def confirm_transaction(self, signature: str, timeout: float = 60.0, poll_interval: float = 0.5) -> Dict[str, Any]:
        """Poll signature status until confirmed. Raises ChainRejection on an on-chain error."""
        deadline = time.monotonic() + timeout
        while True:
            res = await self.call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
            status = ((res or {}).get("value") or [None])[0]
            if status is not None:
                if status.get("err"):
                    raise ChainRejection(f"Transaction {signature} failed: {status['err']}", body=status["err"])
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return status
            if time.monotonic() >= deadline:
                raise LedgerRpcError(f"Timed out waiting for confirmation of {signature}")
            await asyncio.sleep(poll_interval)

    async def get_health(self) -> str:
        return await self.call("getHealth")
