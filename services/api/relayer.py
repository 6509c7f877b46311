# services/api/relayer.py
from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional, Sequence

import httpx

from services.api.config import PROTOCOL_NAME
from services.api.logging_config import get_logger
from services.api.schemas_api import ExecuteRelayedReq, ExecuteReq, IntentReq, IntentRes, RelayerRes
from services.protocol.errors import RelayerFailure

logger = get_logger("relayer")


def relayer_intent_message(
    signer: str,
    expires_at_ms: int,
    transaction_b64: str,
    lookup_table_addresses: Optional[Sequence[str]] = None,
    protocol: str = PROTOCOL_NAME,
) -> str:
    lines = [
        f"{protocol} relayer intent",
        f"signer:{signer}",
        f"expiresAt:{expires_at_ms}",
        f"transaction:{transaction_b64}",
    ]
    if lookup_table_addresses:
        lines.append(f"lookupTableAddresses:{','.join(lookup_table_addresses)}")
    return "\n".join(lines)


class RelayerClient:
    """
    HTTP client for the relayer. One POST per call, bounded by the timeout.

    Nothing here retries: a nullifier-bearing transaction that may or may not
    have landed must never be presented twice.
    """

    def __init__(self, url: str, timeout: float = 15.0, client: Optional[httpx.AsyncClient] = None):
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
            raise RelayerFailure(f"Relayer {path} transport error: {e}") from e
        try:
            body = r.json()
        except ValueError:
            body = {"error": r.text}
        if r.status_code >= 400 or (isinstance(body, dict) and body.get("error")):
            detail = body.get("error", r.text) if isinstance(body, dict) else r.text
            raise RelayerFailure(f"Relayer error ({r.status_code}): {detail}", body=body)
        return body

    async def _submit(self, path: str, req) -> str:
        body = await self._post(path, req.model_dump(by_alias=True, exclude_none=True))
        try:
            return RelayerRes.model_validate(body).signature
        except ValueError as e:
            raise RelayerFailure(f"Relayer {path} response has no signature", body=body) from e

    async def execute(self, transaction: bytes) -> str:
        """Mode (a): transaction already carries every signature."""
        return await self._submit("/execute", ExecuteReq(transaction=base64.b64encode(transaction).decode()))

    async def execute_relayed(self, transaction: bytes) -> str:
        """Mode (b): relayer is fee payer and signs."""
        req = ExecuteRelayedReq(transaction=base64.b64encode(transaction).decode())
        return await self._submit("/execute-relayed", req)

    async def execute_intent(
        self,
        transaction: bytes,
        signer: str,
        message: str,
        signature: bytes,
        lookup_table_addresses: Optional[List[str]] = None,
    ) -> str:
        """Mode (c): relayer co-signs after checking the signed intent message."""
        req = ExecuteRelayedReq(
            transaction=base64.b64encode(transaction).decode(),
            message=message,
            signature=base64.b64encode(signature).decode(),
            signer=signer,
            lookup_table_addresses=lookup_table_addresses or None,
        )
        return await self._submit("/execute-relayed", req)

    async def post_intent(self, intent: IntentReq) -> str:
        body = await self._post("/intent", intent.model_dump(by_alias=True, exclude_none=True))
        try:
            return IntentRes.model_validate(body).id
        except ValueError as e:
            raise RelayerFailure("Relayer /intent response has no id", body=body) from e

