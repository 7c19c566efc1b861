"""
zk.verifiers.poseidon
=====================

Poseidon permutation over the BN254 scalar field (Fr), width t=3.

This is the *single* field hash used by every part of the vault: note
commitments, nullifiers, the incremental commitment tree, association roots and
attestation binding. Any drift in constants between the ledger and off-chain note
derivation silently breaks every withdrawal, so the parameter set lives here once
and everything else calls `poseidon2`.

Parameters
----------
Parameters are data (`PoseidonParams`) held in a small registry. The default set
`vault_t3` is registered at import time:

- t = 3 (rate 2, capacity 1), alpha = 5
- R_F = 8 full rounds (4 before, 4 after), R_P = 57 partial rounds
- the same three-element constant row is added on every round
- a fixed 3x3 mixing matrix

A deployment whose circuit was compiled with other constants can load them with
`load_params_json(path, name="vault_t3")` at process start (before any hashing).

Public API
----------
- PoseidonParams(t, R_F, R_P, alpha, mds, rc)
- register_params(name, params) / get_params(name) / load_params_json(path, name)
- poseidon_permute(state, params)
- poseidon2(a, b, *, params_name="vault_t3")  -> lane 0 after one permutation
- poseidon_hash(inputs, *, params_name="vault_t3")  (1 or 2 inputs)

JSON schema
-----------
{
  "t": 3, "R_F": 8, "R_P": 57, "alpha": 5,
  "mds": [[...t ints...], [...], [...]],
  "rc":  [[...t ints...], ... R_F+R_P rows ...]
}

Integers may be decimal strings, "0x" hex strings or JSON numbers.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

from .field import P as _MOD

DEFAULT_PARAMS = "vault_t3"


# ---------------------------
# Field arithmetic (mod Fr)
# ---------------------------


def _fpow_alpha(x: int, alpha: int) -> int:
    # Fast path for alpha=5 (x^5 = x * x^2 * x^2)
    if alpha == 5:
        x2 = (x * x) % _MOD
        x4 = (x2 * x2) % _MOD
        return (x * x4) % _MOD
    return pow(x, alpha, _MOD)


# ---------------------------
# Parameters & registry
# ---------------------------


@dataclass(frozen=True)
class PoseidonParams:
    t: int  # state width
    R_F: int  # number of full rounds
    R_P: int  # number of partial rounds
    alpha: int  # S-box exponent (odd >= 3, commonly 5)
    mds: List[List[int]]  # MDS matrix, shape t x t
    rc: List[List[int]]  # round constants, shape (R_F + R_P) x t

    def validate(self) -> None:
        if self.t < 2:
            raise ValueError("t must be >= 2")
        if self.R_F % 2 != 0:
            raise ValueError(
                "R_F must be even (split half-before/after partial rounds)"
            )
        if self.alpha < 3 or self.alpha % 2 == 0:
            raise ValueError("alpha must be an odd integer >= 3")
        if len(self.mds) != self.t or any(len(row) != self.t for row in self.mds):
            raise ValueError("mds must be t x t")
        expected_rounds = self.R_F + self.R_P
        if len(self.rc) != expected_rounds or any(
            len(row) != self.t for row in self.rc
        ):
            raise ValueError(f"rc must be (R_F+R_P) x t = {expected_rounds} x {self.t}")


_PARAMS_REGISTRY: Dict[str, PoseidonParams] = {}


def register_params(name: str, params: PoseidonParams) -> None:
    """
    Register a Poseidon parameter set under `name`.

    Re-registering an existing name replaces it; do this once at startup,
    before any commitment or root is computed.
    """
    if not name or not isinstance(name, str):
        raise ValueError("name must be a non-empty string")
    params.validate()
    _PARAMS_REGISTRY[name] = params


def get_params(name: str = DEFAULT_PARAMS) -> PoseidonParams:
    if name not in _PARAMS_REGISTRY:
        raise KeyError(
            f"Poseidon params '{name}' are not registered. "
            "Load them with load_params_json(...) or register_params(...)."
        )
    return _PARAMS_REGISTRY[name]


def _to_int(x: Union[int, str]) -> int:
    if isinstance(x, int):
        return x % _MOD
    s = str(x).strip().lower()
    if s.startswith("0x"):
        return int(s, 16) % _MOD
    return int(s) % _MOD


def load_params_json(path: str, name: Optional[str] = None) -> PoseidonParams:
    """
    Load a Poseidon params JSON file and register it.

    If `name` is None, a name is derived from the filename (without extension).
    """
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    params = PoseidonParams(
        t=int(raw["t"]),
        R_F=int(raw["R_F"]),
        R_P=int(raw["R_P"]),
        alpha=int(raw.get("alpha", 5)),
        mds=[[_to_int(v) for v in row] for row in raw["mds"]],
        rc=[[_to_int(v) for v in row] for row in raw["rc"]],
    )
    reg_name = name or os.path.splitext(os.path.basename(path))[0]
    register_params(reg_name, params)
    return params


# ---------------------------
# Permutation
# ---------------------------


def _apply_mds(state: List[int], mds: List[List[int]]) -> List[int]:
    t = len(state)
    out = [0] * t
    for i in range(t):
        row = mds[i]
        acc = 0
        for j in range(t):
            acc += row[j] * state[j]
        out[i] = acc % _MOD
    return out


def poseidon_permute(state: Sequence[int], params: PoseidonParams) -> List[int]:
    """
    Poseidon permutation.

    Round schedule:
      - First R_F/2 full rounds (S-box on all t elements)
      - R_P partial rounds (S-box on the *first* element only)
      - Last  R_F/2 full rounds

    Every round adds its constant row to all lanes before the S-box layer and
    finishes with the MDS mix. Returns a new list with the permuted state.
    """
    t, R_F, R_P, alpha, mds, rc = (
        params.t,
        params.R_F,
        params.R_P,
        params.alpha,
        params.mds,
        params.rc,
    )
    if len(state) != t:
        raise ValueError(f"state length {len(state)} != t={t}")

    x = [int(v) % _MOD for v in state]
    half = R_F // 2
    r = 0

    for _ in range(half):
        row = rc[r]
        x = [_fpow_alpha((x[i] + row[i]) % _MOD, alpha) for i in range(t)]
        x = _apply_mds(x, mds)
        r += 1

    for _ in range(R_P):
        row = rc[r]
        x = [(x[i] + row[i]) % _MOD for i in range(t)]
        x[0] = _fpow_alpha(x[0], alpha)
        x = _apply_mds(x, mds)
        r += 1

    for _ in range(half):
        row = rc[r]
        x = [_fpow_alpha((x[i] + row[i]) % _MOD, alpha) for i in range(t)]
        x = _apply_mds(x, mds)
        r += 1

    assert r == R_F + R_P, "round counter mismatch"
    return x


# ---------------------------
# Hash interface
# ---------------------------


def poseidon2(a: int, b: int, *, params_name: str = DEFAULT_PARAMS) -> int:
    """
    Two-to-one field hash: state = [a mod P, b mod P, 0], one permutation,
    return lane 0.
    """
    params = get_params(params_name)
    if params.t != 3:
        raise ValueError(f"Params '{params_name}' have t={params.t}, expected t=3")
    return poseidon_permute([int(a) % _MOD, int(b) % _MOD, 0], params)[0]


def poseidon_hash(inputs: Sequence[int], *, params_name: str = DEFAULT_PARAMS) -> int:
    """Hash one or two field elements (missing lanes are zero)."""
    if not 1 <= len(inputs) <= 2:
        raise ValueError("Poseidon t=3 hashes 1 or 2 inputs")
    a = inputs[0]
    b = inputs[1] if len(inputs) == 2 else 0
    return poseidon2(a, b, params_name=params_name)


# ---------------------------
# Ledger parameter set
# ---------------------------

# Constant row added on every round, and the mixing matrix, exactly as the
# deposit SDK computes commitments against the ledger.
_LEDGER_RC_ROW = [
    0x0EE9A592BA9A9518D05986D656F40C2114C4993C11BB29938D21D47304CD8E6E,
    0x00F1445235F2148C5986587169FC1BCD887B08D4D00868DF5696FFF40956E864,
    0x08DFF3487E8AC99E1F29A058D0FA80B930C728730B7AB36CE879F3890ECF73F5,
]

_LEDGER_MDS = [
    [
        0x109B7F411BA0E4C9B2B70CAF5C36A7B194BE7C11AD24378BFEDB68592BA8118B,
        0x16ED41E13BB9C0C66AE119424FDDBCBC9314DC9FDBDEEA55D6C64543DC4903E0,
        0x2B90BBA00F05D28C6D4C9D2F1D4D3C2E7F5D8E4A3B2C1D0E9F8A7B6C5D4E3F2A,
    ],
    [
        0x2969F27EED31A480B9C36C764379DBCA2CC8FDD1415C3DDED62940BCDE0BD771,
        0x143021EC686A3F330D5F9E654638065CE6CD79E28C5B3753326244EE65A1B1A7,
        0x1E3F7A4C5D6B8E9F0A1B2C3D4E5F6A7B8C9D0E1F2A3B4C5D6E7F8A9B0C1D2E3F,
    ],
    [
        0x176CC029695AD02582A70EFF08A6FD99D057E12E58E7D7B6B16CDFABC8EE2911,
        0x19A3FC0A56702BF417BA7FEE3802593FA644470307043F7773C5E6F71C7C5E3A,
        0x2B4129C2E5A87D9C3E1F5B7D9A2C4E6F8A0B2D4C6E8F0A2B4C6D8E0F2A4B6C8D,
    ],
]


def ledger_params() -> PoseidonParams:
    R_F, R_P = 8, 57
    return PoseidonParams(
        t=3,
        R_F=R_F,
        R_P=R_P,
        alpha=5,
        mds=[[v % _MOD for v in row] for row in _LEDGER_MDS],
        rc=[list(_LEDGER_RC_ROW) for _ in range(R_F + R_P)],
    )


register_params(DEFAULT_PARAMS, ledger_params())


if __name__ == "__main__":  # pragma: no cover
    p = get_params()
    print(f"[poseidon] params '{DEFAULT_PARAMS}' t={p.t} R_F={p.R_F} R_P={p.R_P} alpha={p.alpha}")
    h1 = poseidon2(1, 2)
    assert h1 == poseidon2(1, 2), "non-deterministic hash"
    assert poseidon2(1, 3) != h1, "input sensitivity failed"
    print("poseidon2(1, 2) =", hex(h1))
