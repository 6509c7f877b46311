# services/crypto_core/babyjub.py
# Baby Jubjub twisted Edwards curve embedded in the BN254 scalar field.
from __future__ import annotations

from typing import Tuple

from services.crypto_core.field import FIELD_MODULUS

Point = Tuple[int, int]

A: int = 168700
D: int = 168696

BASE8: Point = (
    5299619240641551281634865583518297030282874472190772894086521144482721001553,
    16950150798460657717958625567821834550301663161624707787222815936182638968203,
)
SUBGROUP_ORDER: int = 2736030358979909402780800718157159386076813972158567259200215660948447373041
IDENTITY: Point = (0, 1)


def on_curve(point: Point) -> bool:
    p = FIELD_MODULUS
    x, y = point
    if not (0 <= x < p and 0 <= y < p):
        return False
    x2 = x * x % p
    y2 = y * y % p
    return (A * x2 + y2) % p == (1 + D * x2 % p * y2) % p


def add(p1: Point, p2: Point) -> Point:
    p = FIELD_MODULUS
    x1, y1 = p1
    x2, y2 = p2
    t = D * x1 % p * x2 % p * y1 % p * y2 % p
    x3 = (x1 * y2 + y1 * x2) * pow((1 + t) % p, -1, p) % p
    y3 = (y1 * y2 - A * x1 * x2) * pow((1 - t) % p, -1, p) % p
    return x3, y3


def mul(point: Point, scalar: int) -> Point:
    if scalar < 0:
        raise ValueError("negative scalar")
    result = IDENTITY
    addend = point
    while scalar:
        if scalar & 1:
            result = add(result, addend)
        addend = add(addend, addend)
        scalar >>= 1
    return result


def mul_base(scalar: int) -> Point:
    return mul(BASE8, scalar)


def require_point(point: Point, label: str = "point") -> Point:
    if not on_curve(point):
        raise ValueError(f"{label} is not on the Baby Jubjub curve")
    return point
