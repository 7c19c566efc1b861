# SPDX-License-Identifier: Apache-2.0
"""
BN254 scalar field (Fr): minimal, pure-Python helpers.

Every commitment, nullifier, tree node and Groth16 public input lives in the
scalar field of BN254 (the curve order `r`, a 254-bit prime). This module keeps
the modulus in one place and provides the fixed 32-byte big-endian encoding used
at the ledger boundary.

It is **not** constant-time and is intended for verification / bookkeeping
utilities, not for secret-bearing computations.

Features:
- Canonical modulus `P` and 32-byte big-endian (de)serialization.
- `reduce`, `parse_field` (int | hex | bytes -> canonical int).
- `is_canonical_bytes` for inputs that must not alias a reduced value.

References:
- EVM precompiles (alt_bn128) and BN254 curve used by Groth16 (snarkjs).
"""

from __future__ import annotations

from typing import Union

from . import ZKError


# BN254 / alt_bn128 scalar field prime (group order r).
P: int = 21888242871839275222246405745257275088548364400416034343698204186575808495617
FP_BYTE_LEN = 32

FieldLike = Union[int, str, bytes, bytearray, memoryview]


def reduce(x: int) -> int:
    """Reduce to canonical representative in [0, P)."""
    return int(x) % P


def to_bytes32(x: int) -> bytes:
    """Reduce and encode as 32-byte big-endian."""
    return reduce(x).to_bytes(FP_BYTE_LEN, "big")


def from_bytes32(b: Union[bytes, bytearray, memoryview]) -> int:
    """Decode exactly 32 big-endian bytes and reduce mod P."""
    b = bytes(b)
    if len(b) != FP_BYTE_LEN:
        raise ZKError(f"expected {FP_BYTE_LEN} bytes, got {len(b)}")
    return reduce(int.from_bytes(b, "big"))


def parse_field(x: FieldLike) -> int:
    """
    Accept an int, a hex string ("0x..." or bare), a decimal string prefixed with
    "dec:", or 32-or-fewer big-endian bytes; return the reduced int.
    """
    if isinstance(x, bool):
        raise ZKError("bool is not a field element")
    if isinstance(x, int):
        if x < 0:
            raise ZKError("negative integers are not field elements")
        return reduce(x)
    if isinstance(x, (bytes, bytearray, memoryview)):
        b = bytes(x)
        if len(b) > FP_BYTE_LEN:
            raise ZKError("too many bytes for field element")
        return reduce(int.from_bytes(b, "big"))
    if isinstance(x, str):
        s = x.strip().lower()
        if s.startswith("dec:"):
            return reduce(int(s[4:], 10))
        if s.startswith("0x"):
            s = s[2:]
        if len(s) > FP_BYTE_LEN * 2:
            raise ZKError("too many hex chars for field element")
        try:
            return reduce(int(s, 16) if s else 0)
        except ValueError as e:
            raise ZKError(f"invalid hex field element: {x!r}") from e
    raise ZKError(f"unsupported field element type: {type(x).__name__}")


def to_hex(x: int) -> str:
    return "0x" + to_bytes32(x).hex()


def is_canonical_bytes(b: bytes) -> bool:
    """Check if bytes represent a canonical element (0 <= x < P) and length == 32."""
    if len(b) != FP_BYTE_LEN:
        return False
    return int.from_bytes(b, "big") < P


ZERO_BYTES32 = bytes(FP_BYTE_LEN)
