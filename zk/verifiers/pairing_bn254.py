"""
zk.verifiers.pairing_bn254
==========================

Thin BN254 (altbn128) Ate pairing wrapper around `py_ecc`.

Public API
----------
- pair(P: G1Point, Q: G2Point) -> GTElement
- product_of_pairings(pairs) -> GTElement
- check_pairing_product(pairs) -> bool
- is_on_curve_g1(P), is_on_curve_g2(Q), is_inf(P)
- normalize_g1(P) / normalize_g2(Q)  (to affine integers)
- g1_from_affine(x, y) / g2_from_affine((x0, x1), (y0, y1))
- g1_generator(), g2_generator(), curve_order(), field_modulus()
- add, multiply, neg  (re-exported backend point ops)

Notes
-----
- Point ordering follows the common convention e(P, Q) with P in G1, Q in G2.
  The underlying `py_ecc` pairing call expects (Q, P); this wrapper handles it.
- Affine (0, 0) is the point at infinity, as in the EVM precompiles.
- We validate (shape + on-curve) before pairing unless one of the points is the
  point-at-infinity (which pair to the identity in GT).
"""

from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence, Tuple

# Try the optimized backend first; fall back to reference if needed.
# Both expose compatible symbols for our usage.
try:
    from py_ecc.optimized_bn128 import (  # type: ignore
        FQ, FQ2, FQ12, G1 as _G1, G2 as _G2, add, b as _B, b2 as _B2,
        curve_order as _Q, field_modulus as _P, is_on_curve as _is_on_curve,
        multiply, neg, normalize as _normalize, pairing as _pairing,
    )
    _BACKEND_NAME = "py_ecc.optimized_bn128"
except ImportError:  # pragma: no cover
    from py_ecc.bn128 import (  # type: ignore
        FQ, FQ2, FQ12, G1 as _G1, G2 as _G2, add, b as _B, b2 as _B2,
        curve_order as _Q, field_modulus as _P, is_on_curve as _is_on_curve,
        multiply, neg, normalize as _normalize, pairing as _pairing,
    )
    _BACKEND_NAME = "py_ecc.bn128"


# Treat points as opaque tuples that py_ecc understands.
G1Point = Any
G2Point = Any
GTElement = FQ12

__all__ = [
    "pair",
    "product_of_pairings",
    "check_pairing_product",
    "is_on_curve_g1",
    "is_on_curve_g2",
    "is_in_subgroup_g2",
    "is_inf",
    "normalize_g1",
    "normalize_g2",
    "g1_from_affine",
    "g2_from_affine",
    "g1_generator",
    "g2_generator",
    "curve_order",
    "field_modulus",
    "add",
    "multiply",
    "neg",
    "BACKEND_NAME",
]

BACKEND_NAME: str = _BACKEND_NAME


def curve_order() -> int:
    """Return the BN254 subgroup order r (the scalar field modulus)."""
    return int(_Q)


def field_modulus() -> int:
    """Return the base field modulus q."""
    return int(_P)


def g1_generator() -> G1Point:
    return _G1


def g2_generator() -> G2Point:
    return _G2


def is_inf(P: Any) -> bool:
    """
    Point-at-infinity check compatible with py_ecc G1/G2 reps.

    py_ecc represents infinity as `None` in affine, or as a projective
    tuple with a zero Z.
    """
    if P is None:
        return True
    if isinstance(P, (tuple, list)) and len(P) == 3:
        z = P[2]
        if hasattr(z, "n"):
            return int(z.n) == 0
        if hasattr(z, "coeffs"):
            return all(int(c) == 0 for c in z.coeffs)
    return False


def is_on_curve_g1(P: G1Point) -> bool:
    """Return True if P is on G1 or is the point at infinity."""
    try:
        return is_inf(P) or bool(_is_on_curve(P, _B))
    except TypeError:
        return is_inf(P) or bool(_is_on_curve(P))


def is_on_curve_g2(Q: G2Point) -> bool:
    """Return True if Q is on G2 or is the point at infinity."""
    try:
        return is_inf(Q) or bool(_is_on_curve(Q, _B2))
    except TypeError:
        return is_inf(Q) or bool(_is_on_curve(Q))


def is_in_subgroup_g2(Q: G2Point) -> bool:
    """
    Return True if Q is on the twist and r * Q is infinity.

    The twist has a large cofactor, so an on-curve point can still lie outside
    the order-r subgroup. G1 has cofactor 1 and needs no such check.
    """
    if is_inf(Q):
        return True
    return is_on_curve_g2(Q) and is_inf(multiply(Q, int(_Q)))


def g1_from_affine(x: int, y: int) -> G1Point:
    """Build a G1 point from affine integers; (0, 0) is infinity."""
    if x == 0 and y == 0:
        return (FQ(1), FQ(1), FQ(0))
    return (FQ(x), FQ(y), FQ(1))


def g2_from_affine(xx: Sequence[int], yy: Sequence[int]) -> G2Point:
    """Build a G2 point from ([x_c0, x_c1], [y_c0, y_c1]); all-zero is infinity."""
    x0, x1 = int(xx[0]), int(xx[1])
    y0, y1 = int(yy[0]), int(yy[1])
    if x0 == 0 and x1 == 0 and y0 == 0 and y1 == 0:
        return (FQ2([1, 0]), FQ2([1, 0]), FQ2([0, 0]))
    return (FQ2([x0, x1]), FQ2([y0, y1]), FQ2([1, 0]))


def normalize_g1(P: G1Point) -> Optional[Tuple[int, int]]:
    """
    Normalize a G1 point to affine (x, y) over FQ, returning integers.
    Returns None for the point at infinity.
    """
    if is_inf(P):
        return None
    ax, ay = _normalize(P)
    return int(ax.n), int(ay.n)


def normalize_g2(Q: G2Point) -> Optional[Tuple[Tuple[int, int], Tuple[int, int]]]:
    """
    Normalize a G2 point to affine ((x_c0, x_c1), (y_c0, y_c1)) with integer limbs.
    Returns None for the point at infinity.
    """
    if is_inf(Q):
        return None
    ax, ay = _normalize(Q)
    # py_ecc FQ2 holds coeffs as [c0, c1] with value = c0 + c1 * i
    xc0, xc1 = (int(ax.coeffs[0]), int(ax.coeffs[1]))
    yc0, yc1 = (int(ay.coeffs[0]), int(ay.coeffs[1]))
    return (xc0, xc1), (yc0, yc1)


# -------------------------
# Pairing
# -------------------------


def pair(P: G1Point, Q: G2Point, *, validate: bool = True) -> GTElement:
    """
    Compute the Ate pairing e(P, Q) on BN254.

    Raises
    ------
    ValueError
        If inputs are not on the curve and validate=True.
    """
    if validate:
        if not is_on_curve_g1(P):
            raise ValueError("G1 point is not on curve")
        if not is_on_curve_g2(Q):
            raise ValueError("G2 point is not on curve")

    # Pairings involving infinity return the identity in GT.
    if is_inf(P) or is_inf(Q):
        return FQ12.one()

    # py_ecc pairing expects (Q, P)
    return _pairing(Q, P)


def product_of_pairings(
    pairs: Iterable[Tuple[G1Point, G2Point]], *, validate: bool = True
) -> GTElement:
    """Compute the product of e(P_i, Q_i) over an iterable of (P_i, Q_i)."""
    acc = FQ12.one()
    for P, Q in pairs:
        acc *= pair(P, Q, validate=validate)
    return acc


def check_pairing_product(
    pairs: Iterable[Tuple[G1Point, G2Point]], *, validate: bool = True
) -> bool:
    """Return True iff the product of e(P_i, Q_i) == 1 in GT."""
    return product_of_pairings(pairs, validate=validate) == FQ12.one()
