# services/crypto_core/merkle.py
# Fixed-depth, zero-filled Poseidon Merkle tree over commitments.
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Sequence, Tuple

from services.crypto_core.poseidon import poseidon2

DEFAULT_DEPTH = 20


@lru_cache(maxsize=None)
def zero_hashes(depth: int = DEFAULT_DEPTH) -> Tuple[int, ...]:
    """Z[0] = 0, Z[L] = H(Z[L-1], Z[L-1]) for L in 1..depth."""
    zeros = [0]
    for _ in range(depth):
        zeros.append(poseidon2(zeros[-1], zeros[-1]))
    return tuple(zeros)


@dataclass(frozen=True)
class MerklePath:
    root: int
    leaf_index: int
    siblings: Tuple[int, ...]
    directions: Tuple[int, ...]


def build_tree(commitments: Sequence[int], depth: int = DEFAULT_DEPTH) -> Tuple[int, List[List[int]]]:
    """
    Build every level of the tree bottom-up.

    Returns (root, levels) where levels[0] is the leaf list and levels[depth]
    holds the root (or is empty for an empty tree, whose root is Z[depth]).
    """
    if len(commitments) > (1 << depth):
        raise ValueError(f"{len(commitments)} leaves do not fit in a depth-{depth} tree")
    zeros = zero_hashes(depth)
    levels: List[List[int]] = [list(commitments)]
    current = levels[0]
    for level in range(depth):
        filler = zeros[level]
        nxt = []
        for i in range(0, len(current), 2):
            left = current[i]
            right = current[i + 1] if i + 1 < len(current) else filler
            nxt.append(poseidon2(left, right))
        levels.append(nxt)
        current = nxt
    root = current[0] if current else zeros[depth]
    return root, levels


def path_from_levels(levels: List[List[int]], leaf_index: int, depth: int = DEFAULT_DEPTH) -> MerklePath:
    if not 0 <= leaf_index < len(levels[0]):
        raise IndexError(f"leaf index {leaf_index} out of range for {len(levels[0])} leaves")
    zeros = zero_hashes(depth)
    siblings: List[int] = []
    directions: List[int] = []
    for level in range(depth):
        idx = leaf_index >> level
        layer = levels[level]
        sib = idx ^ 1
        siblings.append(layer[sib] if sib < len(layer) else zeros[level])
        directions.append(idx & 1)
    root = levels[depth][0]
    return MerklePath(root=root, leaf_index=leaf_index, siblings=tuple(siblings), directions=tuple(directions))


def path_for(commitments: Sequence[int], leaf_index: int, depth: int = DEFAULT_DEPTH) -> MerklePath:
    _, levels = build_tree(commitments, depth)
    return path_from_levels(levels, leaf_index, depth)


def compute_root_from_path(leaf: int, siblings: Sequence[int], directions: Sequence[int]) -> int:
    node = leaf
    for sibling, direction in zip(siblings, directions):
        node = poseidon2(sibling, node) if direction else poseidon2(node, sibling)
    return node


def verify_path(leaf: int, path: MerklePath) -> bool:
    return compute_root_from_path(leaf, path.siblings, path.directions) == path.root


def empty_path(depth: int = DEFAULT_DEPTH) -> MerklePath:
    """All-zero path used to fill disabled circuit input slots."""
    return MerklePath(root=0, leaf_index=0, siblings=(0,) * depth, directions=(0,) * depth)


class MerkleTree:
    """Append-only commitment list with a lazily rebuilt level cache."""

    def __init__(self, leaves: Optional[Sequence[int]] = None, depth: int = DEFAULT_DEPTH):
        self.depth = depth
        self.leaves: List[int] = list(leaves or [])
        self._levels: Optional[List[List[int]]] = None
        self._root: Optional[int] = None

    def __len__(self) -> int:
        return len(self.leaves)

    def _build(self) -> None:
        self._root, self._levels = build_tree(self.leaves, self.depth)

    def append(self, leaf: int) -> int:
        self.leaves.append(leaf)
        self._levels = None
        self._root = None
        return len(self.leaves) - 1

    def truncate(self, length: int) -> None:
        del self.leaves[length:]
        self._levels = None
        self._root = None

    @property
    def root(self) -> int:
        if self._root is None:
            self._build()
        return self._root

    def path(self, leaf_index: int) -> MerklePath:
        if self._levels is None:
            self._build()
        return path_from_levels(self._levels, leaf_index, self.depth)
