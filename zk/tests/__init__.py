"""
zk.tests helpers

Lightweight utilities and environment defaults shared by zk/* tests.

Exports:
- TEST_ROOT
- fixture_path(*parts) -> Path
- read_json(path_or_name) -> Any
- env_flag(name, default=False) -> bool
- configure_test_logging() -> None
- SyntheticGroth16 / synthetic_groth16(inputs, seed) -> key + valid proof

Environment toggles:
- ZK_TEST_LOG=1           -> enable INFO logging for zk.*
- ZK_GROTH16_DIR=<dir>    -> directory holding a real vk.json / proof.json / public.json
"""

from __future__ import annotations

import json
import logging
import os
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence, Union

from zk.verifiers.groth16_bn254 import Proof, VerifyingKey, load_vk
from zk.verifiers.pairing_bn254 import (curve_order, g1_generator, g2_generator,
                                        multiply, normalize_g1, normalize_g2)

# --- Paths --------------------------------------------------------------------

TEST_ROOT: Path = Path(__file__).resolve().parent


def fixture_path(*parts: Union[str, Path]) -> Path:
    """
    Return a path under zk/tests/fixtures.
    """
    base = TEST_ROOT / "fixtures"
    return base.joinpath(*map(lambda x: Path(x), parts))


# --- JSON ---------------------------------------------------------------------


def read_json(path_or_name: Union[str, Path]) -> Any:
    """
    Read and parse JSON from a path. If a bare name is given, resolve under fixtures/.
    """
    p = Path(path_or_name)
    if not p.suffix and not p.exists():
        p = fixture_path(str(p))
    if not p.exists():
        raise FileNotFoundError(f"JSON file not found: {p}")
    with p.open("r", encoding="utf-8") as fh:
        return json.load(fh)


# --- Synthetic Groth16 instance -----------------------------------------------
#
# Without a circuit we can still produce a key/proof pair that satisfies the
# verification equation: pick every discrete log at random and solve for C.
#   -a*b + alpha*beta + v*gamma + c*delta == 0  (mod r)
# where v = ic_0 + sum x_i * ic_{i+1}.


def _g1_json(s: int) -> List[str]:
    x, y = normalize_g1(multiply(g1_generator(), s))
    return [str(x), str(y), "1"]


def _g2_json(s: int) -> List[List[str]]:
    (x0, x1), (y0, y1) = normalize_g2(multiply(g2_generator(), s))
    return [[str(x0), str(x1)], [str(y0), str(y1)], ["1", "0"]]


@dataclass
class SyntheticGroth16:
    vk_json: Dict[str, Any]
    vk: VerifyingKey
    proof: Proof
    proof_bytes: bytes
    inputs: List[int]


def synthetic_groth16(inputs: Sequence[int], seed: int = 7) -> SyntheticGroth16:
    r = curve_order()
    rng = random.Random(seed)

    def rnd() -> int:
        return rng.randrange(1, r)

    a, b, alpha, beta, gamma, delta = (rnd() for _ in range(6))
    ic = [rnd() for _ in range(len(inputs) + 1)]
    xs = [int(x) % r for x in inputs]
    v = (ic[0] + sum(x * k for x, k in zip(xs, ic[1:]))) % r
    c = ((a * b - alpha * beta - v * gamma) * pow(delta, -1, r)) % r

    vk_json = {
        "protocol": "groth16",
        "curve": "bn128",
        "nPublic": len(inputs),
        "vk_alpha_1": _g1_json(alpha),
        "vk_beta_2": _g2_json(beta),
        "vk_gamma_2": _g2_json(gamma),
        "vk_delta_2": _g2_json(delta),
        "IC": [_g1_json(k) for k in ic],
    }
    proof = Proof(
        A=multiply(g1_generator(), a),
        B=multiply(g2_generator(), b),
        C=multiply(g1_generator(), c),
    )
    return SyntheticGroth16(
        vk_json=vk_json,
        vk=load_vk(vk_json),
        proof=proof,
        proof_bytes=proof.to_bytes(),
        inputs=list(xs),
    )


# --- Env & logging -------------------------------------------------------------


def env_flag(name: str, default: bool = False) -> bool:
    """
    Read an environment flag in a truthy/falsey way: "1", "true", "yes" -> True.
    """
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "on"}


def configure_test_logging(level: int | None = None) -> None:
    """
    Configure basic logging for zk.* loggers when ZK_TEST_LOG is set.
    """
    if level is None:
        level = logging.INFO
    if env_flag("ZK_TEST_LOG", False):
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        logging.getLogger("zk").setLevel(level)


configure_test_logging()

__all__ = [
    "TEST_ROOT",
    "fixture_path",
    "read_json",
    "env_flag",
    "configure_test_logging",
    "SyntheticGroth16",
    "synthetic_groth16",
]
