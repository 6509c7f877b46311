# services/crypto_core/poseidon.py
"""
Poseidon hash over the BN254 scalar field.

Parameters follow the circom-style instantiation: x^5 S-box, 8 full rounds,
width-dependent partial rounds, width t = number of inputs + 1 and a zero
capacity element in front of the inputs. Round constants and the Cauchy MDS
matrix come out of the Grain LFSR generator described in the Poseidon paper
(field=prime, sbox=x^alpha, n=254 bits), so nothing is shipped as a constant
table; each width is generated once and cached.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Sequence, Tuple

from services.crypto_core.field import FIELD_MODULUS, require_field

FIELD_BITS = 254
FULL_ROUNDS = 8
# index: t - 2
PARTIAL_ROUNDS: Tuple[int, ...] = (56, 57, 56, 60, 60, 63, 64, 63, 60, 66, 60, 65, 70, 60, 64, 68)
MAX_INPUTS = len(PARTIAL_ROUNDS)


class _GrainLFSR:
    """80-bit self-shrinking Grain LFSR used to derive round constants."""

    def __init__(self, n: int, t: int, r_f: int, r_p: int, field: int = 1, sbox: int = 0):
        header = (
            format(field, "02b")
            + format(sbox, "04b")
            + format(n, "012b")
            + format(t, "012b")
            + format(r_f, "010b")
            + format(r_p, "010b")
            + "1" * 30
        )
        self._bits = deque(int(b) for b in header)
        for _ in range(160):
            self._clock()

    def _clock(self) -> int:
        s = self._bits
        bit = s[62] ^ s[51] ^ s[38] ^ s[23] ^ s[13] ^ s[0]
        s.popleft()
        s.append(bit)
        return bit

    def next_bit(self) -> int:
        while True:
            keep = self._clock()
            bit = self._clock()
            if keep == 1:
                return bit

    def random_bits(self, count: int) -> int:
        value = 0
        for _ in range(count):
            value = (value << 1) | self.next_bit()
        return value


@dataclass(frozen=True)
class PoseidonParams:
    t: int
    full_rounds: int
    partial_rounds: int
    round_constants: Tuple[int, ...]
    mds: Tuple[Tuple[int, ...], ...]


def _cauchy_mds(grain: _GrainLFSR, t: int) -> Tuple[Tuple[int, ...], ...]:
    p = FIELD_MODULUS
    while True:
        draws = [grain.random_bits(FIELD_BITS) % p for _ in range(2 * t)]
        while len(set(draws)) != len(draws):
            draws = [grain.random_bits(FIELD_BITS) % p for _ in range(2 * t)]
        xs, ys = draws[:t], draws[t:]
        if any((x + y) % p == 0 for x in xs for y in ys):
            continue
        return tuple(tuple(pow(x + y, -1, p) for y in ys) for x in xs)


@lru_cache(maxsize=None)
def poseidon_params(t: int) -> PoseidonParams:
    if not (2 <= t <= MAX_INPUTS + 1):
        raise ValueError(f"unsupported Poseidon width t={t}")
    r_p = PARTIAL_ROUNDS[t - 2]
    grain = _GrainLFSR(FIELD_BITS, t, FULL_ROUNDS, r_p)
    constants: List[int] = []
    for _ in range((FULL_ROUNDS + r_p) * t):
        c = grain.random_bits(FIELD_BITS)
        while c >= FIELD_MODULUS:
            c = grain.random_bits(FIELD_BITS)
        constants.append(c)
    mds = _cauchy_mds(grain, t)
    return PoseidonParams(t=t, full_rounds=FULL_ROUNDS, partial_rounds=r_p,
                          round_constants=tuple(constants), mds=mds)


def poseidon_permute(state: Sequence[int], params: PoseidonParams) -> List[int]:
    p = FIELD_MODULUS
    t = params.t
    rc = params.round_constants
    mds = params.mds
    half = params.full_rounds // 2
    rounds = params.full_rounds + params.partial_rounds
    s = list(state)
    for r in range(rounds):
        base = r * t
        s = [(s[i] + rc[base + i]) % p for i in range(t)]
        if r < half or r >= half + params.partial_rounds:
            s = [pow(x, 5, p) for x in s]
        else:
            s[0] = pow(s[0], 5, p)
        s = [sum(row[j] * s[j] for j in range(t)) % p for row in mds]
    return s


def poseidon(inputs: Sequence[int]) -> int:
    """Hash 1..16 field elements into one field element."""
    if not 1 <= len(inputs) <= MAX_INPUTS:
        raise ValueError(f"Poseidon takes 1..{MAX_INPUTS} inputs, got {len(inputs)}")
    for i, value in enumerate(inputs):
        require_field(value, f"input[{i}]")
    params = poseidon_params(len(inputs) + 1)
    return poseidon_permute([0, *inputs], params)[0]


def poseidon2(left: int, right: int) -> int:
    return poseidon([left, right])
