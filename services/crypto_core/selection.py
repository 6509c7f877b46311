# services/crypto_core/selection.py
from __future__ import annotations

from itertools import combinations
from typing import List, Optional, Protocol, Sequence, Tuple, TypeVar

# multi-note search looks at no more than this many notes
MAX_CANDIDATES = 24


class _Spendable(Protocol):
    amount: int
    leaf_index: int


N = TypeVar("N", bound=_Spendable)


def _largest(notes: Sequence[N], limit: int) -> List[N]:
    kept = sorted(notes, key=lambda n: (-n.amount, n.leaf_index))[:limit]
    return sorted(kept, key=lambda n: n.leaf_index)


def select_for_amount(notes: Sequence[N], target: int, max_inputs: int) -> Optional[Tuple[List[N], int]]:
    """
    Pick at most `max_inputs` notes whose amounts sum to >= target.

    Preference order: fewest notes, then smallest excess over target, then the
    lowest leaf indices. Returns (notes, total) or None when no subset of the
    allowed size covers the target. Never returns a partial fill.

    Wallets holding more than MAX_CANDIDATES notes only combine their largest
    MAX_CANDIDATES; the fewest-notes guarantee still holds.
    """
    if target <= 0 or max_inputs <= 0 or not notes:
        return None
    cand = sorted(notes, key=lambda n: n.leaf_index)
    if sum(n.amount for n in cand) < target:
        return None
    by_amount_desc = sorted((n.amount for n in cand), reverse=True)
    pool = cand if len(cand) <= MAX_CANDIDATES else _largest(cand, MAX_CANDIDATES)
    for k in range(1, min(max_inputs, len(cand)) + 1):
        if sum(by_amount_desc[:k]) < target:
            continue
        best: Optional[Tuple[int, Tuple[int, ...], Tuple[N, ...]]] = None
        for combo in combinations(cand if k == 1 else pool, k):
            total = sum(n.amount for n in combo)
            if total < target:
                continue
            key = (total - target, tuple(n.leaf_index for n in combo))
            if best is None or key < best[:2]:
                best = (key[0], key[1], combo)
                if best[0] == 0:
                    break
        if best is not None:
            chosen = list(best[2])
            return chosen, sum(n.amount for n in chosen)
    return None
