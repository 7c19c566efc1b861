"""
zk.verifiers.groth16_bn254
==========================

Groth16 verifier for BN254 (altbn128), compatible with the common `snarkjs`
JSON layout and with the fixed 256-byte proof encoding the ledger receives.

Verification equation (product form)
------------------------------------
    e(-A, B) * e(alpha1, beta2) * e(VK_x, gamma2) * e(C, delta2) == 1

with VK_x = IC[0] + sum_i inputs[i] * IC[i+1]. A is negated because the check
is a single product against the identity in GT rather than two pairings
compared for equality.

JSON compatibility (snarkjs)
----------------------------
- Verifying key:
  {
    "vk_alpha_1": [ax, ay],
    "vk_beta_2": [[bx0, bx1], [by0, by1]],
    "vk_gamma_2": [[gx0, gx1], [gy0, gy1]],
    "vk_delta_2": [[dx0, dx1], [dy0, dy1]],
    "IC": [[ic0x, ic0y], [ic1x, ic1y], ...]   # length = 1 + #public_inputs
  }

- Proof:
  {
    "pi_a": [ax, ay],
    "pi_b": [[bx0, bx1], [by0, by1]],
    "pi_c": [cx, cy]
  }

All coordinates are decimal strings (or numbers). For G2, elements are Fq2
with the convention: c0 + c1 * i  is encoded as [c0, c1]. A trailing projective
"1" coordinate (as snarkjs writes it) is tolerated and ignored.

Byte layout (256 bytes, big-endian 32-byte words)
-------------------------------------------------
    A.x | A.y | B.x.c1 | B.x.c0 | B.y.c1 | B.y.c0 | C.x | C.y

This is the order the EVM alt_bn128 pairing precompile consumes, so proofs
exported for an on-chain verifier can be handed to the ledger unchanged.

Public API
----------
- verify_groth16(vk_json, proof_json, inputs) -> bool
- verify_groth16_points(vk, proof, inputs) -> bool
- load_vk(vk_json) / load_vk_file(path) -> VerifyingKey
- load_proof(proof_json) -> Proof
- Proof.from_bytes(blob) / Proof.to_bytes()

License: MIT
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, List, Sequence, Union

from . import ZKError
from .pairing_bn254 import (BACKEND_NAME, add, check_pairing_product,
                            curve_order, field_modulus, g1_from_affine,
                            g2_from_affine, is_in_subgroup_g2, is_on_curve_g1,
                            is_on_curve_g2, multiply, neg, normalize_g1, normalize_g2)

# Types the backend understands (opaque tuples)
G1Point = Any
G2Point = Any

PROOF_BYTES = 256
_WORD = 32


# ---------------------------
# Utilities
# ---------------------------

_FR = int(curve_order())
_FQ = int(field_modulus())


def _to_int(z: Union[int, str]) -> int:
    if isinstance(z, int):
        return z
    s = str(z).strip().lower()
    if s.startswith("0x"):
        return int(s, 16)
    return int(s)


def _fr(z: Union[int, str]) -> int:
    return _to_int(z) % _FR


def _g1(x: Union[int, str], y: Union[int, str]) -> G1Point:
    return g1_from_affine(_to_int(x), _to_int(y))


def _g2(xx: Sequence[Union[int, str]], yy: Sequence[Union[int, str]]) -> G2Point:
    # Expect xx = [x_c0, x_c1], yy = [y_c0, y_c1]
    return g2_from_affine(
        (_to_int(xx[0]), _to_int(xx[1])), (_to_int(yy[0]), _to_int(yy[1]))
    )


def _word(blob: bytes, i: int) -> int:
    v = int.from_bytes(blob[i * _WORD:(i + 1) * _WORD], "big")
    if v >= _FQ:
        raise ZKError(f"proof word {i} is not a canonical base-field element")
    return v


def _w(v: int) -> bytes:
    return int(v).to_bytes(_WORD, "big")


# ---------------------------
# Data classes
# ---------------------------


@dataclass(frozen=True)
class VerifyingKey:
    alpha1: G1Point
    beta2: G2Point
    gamma2: G2Point
    delta2: G2Point
    IC: List[G1Point]  # [IC0, IC1, ..., ICn]

    @property
    def n_public(self) -> int:
        return len(self.IC) - 1


@dataclass(frozen=True)
class Proof:
    A: G1Point
    B: G2Point
    C: G1Point

    @classmethod
    def from_bytes(cls, blob: bytes) -> "Proof":
        """
        Decode the 256-byte layout. Trailing bytes beyond 256 are ignored.
        Raises ZKError on short input, non-canonical words, off-curve points
        or a B outside the G2 subgroup.
        """
        blob = bytes(blob)
        if len(blob) < PROOF_BYTES:
            raise ZKError(f"groth16 proof needs {PROOF_BYTES} bytes, got {len(blob)}")
        A = g1_from_affine(_word(blob, 0), _word(blob, 1))
        # EVM order: x.c1, x.c0, y.c1, y.c0
        B = g2_from_affine(
            (_word(blob, 3), _word(blob, 2)), (_word(blob, 5), _word(blob, 4))
        )
        C = g1_from_affine(_word(blob, 6), _word(blob, 7))
        if not (is_on_curve_g1(A) and is_on_curve_g2(B) and is_on_curve_g1(C)):
            raise ZKError("Proof points are not on curve")
        if not is_in_subgroup_g2(B):
            raise ZKError("Proof point B is not in the G2 subgroup")
        return cls(A=A, B=B, C=C)

    def to_bytes(self) -> bytes:
        a = normalize_g1(self.A) or (0, 0)
        b = normalize_g2(self.B) or ((0, 0), (0, 0))
        c = normalize_g1(self.C) or (0, 0)
        (bx0, bx1), (by0, by1) = b
        return b"".join(
            _w(v) for v in (a[0], a[1], bx1, bx0, by1, by0, c[0], c[1])
        )


# ---------------------------
# Loaders (snarkjs JSON)
# ---------------------------


def load_vk(vk_json: dict) -> VerifyingKey:
    """
    Parse a snarkjs-style verifying key JSON object into a VerifyingKey.
    """
    try:
        # Accept both common keys and relaxed names
        a1 = vk_json.get("vk_alpha_1") or vk_json.get("alpha_1") or vk_json["alpha1"]
        b2 = vk_json.get("vk_beta_2") or vk_json.get("beta_2") or vk_json["beta2"]
        g2 = vk_json.get("vk_gamma_2") or vk_json.get("gamma_2") or vk_json["gamma2"]
        d2 = vk_json.get("vk_delta_2") or vk_json.get("delta_2") or vk_json["delta2"]
        IC = vk_json.get("IC") or vk_json.get("vk_ic") or vk_json["ic"]

        alpha1 = _g1(a1[0], a1[1])
        beta2 = _g2(b2[0], b2[1])
        gamma2 = _g2(g2[0], g2[1])
        delta2 = _g2(d2[0], d2[1])
        ic_pts = [_g1(p[0], p[1]) for p in IC]
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise ZKError(f"malformed verifying key: {e}") from e

    if not ic_pts:
        raise ZKError("verifying key has no IC points")
    # Basic sanity
    if not (
        is_on_curve_g1(alpha1)
        and is_on_curve_g2(beta2)
        and is_on_curve_g2(gamma2)
        and is_on_curve_g2(delta2)
    ):
        raise ZKError("VK points are not on curve")
    if not all(is_in_subgroup_g2(Q) for Q in (beta2, gamma2, delta2)):
        raise ZKError("VK G2 points are not in the G2 subgroup")
    for P in ic_pts:
        if not is_on_curve_g1(P):
            raise ZKError("IC point not on G1 curve")

    return VerifyingKey(
        alpha1=alpha1, beta2=beta2, gamma2=gamma2, delta2=delta2, IC=ic_pts
    )


def load_vk_file(path: str) -> VerifyingKey:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ZKError(f"cannot read verifying key {path!r}: {e}") from e
    return load_vk(raw)


def load_proof(proof_json: dict) -> Proof:
    """
    Parse a snarkjs-style proof JSON object into a Proof.
    """
    try:
        A = proof_json.get("pi_a") or proof_json.get("A")
        B = proof_json.get("pi_b") or proof_json.get("B")
        C = proof_json.get("pi_c") or proof_json.get("C")

        A1 = _g1(A[0], A[1])
        B2 = _g2(B[0], B[1])
        C1 = _g1(C[0], C[1])
    except (IndexError, TypeError, ValueError) as e:
        raise ZKError(f"malformed proof: {e}") from e

    # Sanity
    if not (is_on_curve_g1(A1) and is_on_curve_g2(B2) and is_on_curve_g1(C1)):
        raise ZKError("Proof points are not on curve")
    if not is_in_subgroup_g2(B2):
        raise ZKError("Proof point B is not in the G2 subgroup")

    return Proof(A=A1, B=B2, C=C1)


# ---------------------------
# Core verification
# ---------------------------


def _vk_x(IC: Sequence[G1Point], inputs: Sequence[Union[int, str]]) -> G1Point:
    """
    Compute VK_x = IC[0] + sum_i inputs[i] * IC[i+1]  in G1.
    """
    if len(IC) != len(inputs) + 1:
        raise ZKError(f"IC length {len(IC)} != 1 + len(inputs) {len(inputs)}")
    acc = IC[0]
    for i, v in enumerate(inputs):
        s = _fr(v)
        if s != 0:
            acc = add(acc, multiply(IC[i + 1], s))
    return acc


def verify_groth16_points(
    vk: VerifyingKey,
    proof: Proof,
    public_inputs: Sequence[Union[int, str]],
) -> bool:
    """
    Check the product-form pairing equation for already-decoded points.

    Raises ZKError when the input count does not match the key.
    """
    vkx = _vk_x(vk.IC, public_inputs)
    pairs = [
        (neg(proof.A), proof.B),
        (vk.alpha1, vk.beta2),
        (vkx, vk.gamma2),
        (proof.C, vk.delta2),
    ]
    return check_pairing_product(pairs)


def verify_groth16(
    vk_json: dict,
    proof_json: dict,
    public_inputs: Sequence[Union[int, str]],
) -> bool:
    """
    Verify a Groth16 proof given snarkjs-style VK/Proof JSON and public inputs.

    Returns True on success, False otherwise (no exceptions for routine failures).
    """
    try:
        vk = load_vk(vk_json)
        pf = load_proof(proof_json)
        return verify_groth16_points(vk, pf, public_inputs)
    except (ZKError, ValueError):
        return False


# ---------------------------
# Self-test (optional smoke)
# ---------------------------

if __name__ == "__main__":  # pragma: no cover
    import sys

    print(f"[groth16_bn254] backend={BACKEND_NAME}")
    if len(sys.argv) == 3:
        # Quick CLI: python groth16_bn254.py vk.json proof.json  (reads public inputs from proof.json if present)
        with open(sys.argv[1], "r") as f:
            vk = json.load(f)
        with open(sys.argv[2], "r") as f:
            proof_obj = json.load(f)
        inputs = proof_obj.get("publicSignals") or proof_obj.get("inputs") or []
        ok = verify_groth16(
            vk, proof_obj["proof"] if "proof" in proof_obj else proof_obj, inputs
        )
        print("verify ->", ok)
    else:
        print(
            "Run with: python zk/verifiers/groth16_bn254.py path/to/vk.json path/to/proof.json"
        )
