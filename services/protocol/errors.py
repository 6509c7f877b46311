# services/protocol/errors.py
from __future__ import annotations

from typing import Any, Optional


class VeilPayError(Exception):
    """Base class for every typed failure surfaced to flow callers."""


class Desync(VeilPayError):
    """Local commitment list or root disagrees with on-chain state."""


class InsufficientFunds(VeilPayError):
    def __init__(self, message: str, *, available: int = 0, requested: int = 0):
        super().__init__(message)
        self.available = available
        self.requested = requested


class ProofFailure(VeilPayError):
    """Prover errored or timed out, or preflight verification rejected the proof."""


class MalformedNote(VeilPayError):
    pass


class _RawBodyError(VeilPayError):
    def __init__(self, message: str, body: Optional[Any] = None):
        super().__init__(message)
        self.body = body


class ChainRejection(_RawBodyError):
    """The on-chain program (or preflight simulation) rejected the instruction."""


class RelayerFailure(_RawBodyError):
    """Relayer transport error or non-success response; never retried."""


class LedgerRpcError(_RawBodyError):
    pass
