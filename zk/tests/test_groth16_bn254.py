"""
Groth16 (BN254) verification.

Pairing checks are pure Python and take seconds; these tests are marked slow.
A synthetic key/proof pair (random discrete logs, C solved from the equation)
exercises the full product check. A real circuit export can be dropped in with
ZK_GROTH16_DIR=<dir containing vk.json, proof.json, public.json>.
"""

import os
from pathlib import Path

import pytest
from py_ecc.optimized_bn128 import FQ2, b2

from zk.tests import configure_test_logging, read_json, synthetic_groth16
from zk.verifiers import ZKError
from zk.verifiers.groth16_bn254 import (PROOF_BYTES, Proof, load_proof, load_vk,
                                        verify_groth16, verify_groth16_points)
from zk.verifiers.pairing_bn254 import (field_modulus, g1_generator, g2_from_affine,
                                        g2_generator, is_in_subgroup_g2,
                                        is_on_curve_g2, multiply)

configure_test_logging()

INPUTS = [123, 456, 789, 10**16]


@pytest.fixture(scope="module")
def instance():
    return synthetic_groth16(INPUTS)


def test_proof_bytes_layout(instance):
    blob = instance.proof_bytes
    assert len(blob) == PROOF_BYTES
    again = Proof.from_bytes(blob + b"\xff" * 8)
    assert again.to_bytes() == blob


def test_proof_from_bytes_rejects_garbage():
    with pytest.raises(ZKError):
        Proof.from_bytes(b"\x00" * 255)
    # (1, 1) is not on G1
    bad = (1).to_bytes(32, "big") * 2 + b"\x00" * 192
    with pytest.raises(ZKError):
        Proof.from_bytes(bad)
    # non-canonical base field word
    with pytest.raises(ZKError):
        Proof.from_bytes(b"\xff" * 256)


def test_load_vk_rejects_malformed():
    with pytest.raises(ZKError):
        load_vk({"vk_alpha_1": ["1", "1"]})
    with pytest.raises(ZKError):
        load_vk(
            {
                "vk_alpha_1": ["1", "1"],
                "vk_beta_2": [["0", "0"], ["0", "0"]],
                "vk_gamma_2": [["0", "0"], ["0", "0"]],
                "vk_delta_2": [["0", "0"], ["0", "0"]],
                "IC": [["0", "0"]],
            }
        )


@pytest.mark.slow
def test_synthetic_proof_verifies(instance):
    assert verify_groth16_points(instance.vk, instance.proof, instance.inputs)


@pytest.mark.slow
def test_wrong_input_rejects(instance):
    inputs = list(instance.inputs)
    inputs[1] += 1
    assert not verify_groth16_points(instance.vk, instance.proof, inputs)


@pytest.mark.slow
def test_tampered_c_rejects(instance):
    tampered = Proof(A=instance.proof.A, B=instance.proof.B, C=multiply(g1_generator(), 5))
    assert not verify_groth16_points(instance.vk, tampered, instance.inputs)


def test_input_count_mismatch_raises(instance):
    with pytest.raises(ZKError):
        verify_groth16_points(instance.vk, instance.proof, instance.inputs[:3])


@pytest.mark.slow
def test_snarkjs_json_entrypoint(instance):
    blob = instance.proof_bytes
    w = [str(int.from_bytes(blob[i * 32:(i + 1) * 32], "big")) for i in range(8)]
    proof_json = {
        "pi_a": [w[0], w[1], "1"],
        "pi_b": [[w[3], w[2]], [w[5], w[4]], ["1", "0"]],
        "pi_c": [w[6], w[7], "1"],
    }
    assert load_proof(proof_json).to_bytes() == blob
    assert verify_groth16(instance.vk_json, proof_json, instance.inputs)
    assert not verify_groth16(instance.vk_json, proof_json, instance.inputs[:2])


def _real_fixture_dir() -> Path:
    env = os.getenv("ZK_GROTH16_DIR")
    if not env:
        pytest.skip("set ZK_GROTH16_DIR to run against a real circuit export")
    return Path(env).expanduser().resolve()


@pytest.mark.slow
def test_real_export_verifies():
    base = _real_fixture_dir()
    for name in ("vk.json", "proof.json", "public.json"):
        if not (base / name).exists():
            pytest.skip(f"missing fixture {base / name}")
    vk = read_json(base / "vk.json")
    proof = read_json(base / "proof.json")
    public = read_json(base / "public.json")
    assert verify_groth16(vk, proof, public)


def _twist_point_outside_subgroup():
    """
    Find (x, y) on y^2 = x^3 + b2 over Fq2 by trying x = k + i and taking a
    square root (q = 3 mod 4). The twist cofactor is huge, so such a point
    is outside the order-r subgroup.
    """
    q = field_modulus()
    minus_one = -FQ2.one()
    for k in range(1, 256):
        x = FQ2([k, 1])
        rhs = x ** 3 + b2
        a1 = rhs ** ((q - 3) // 4)
        alpha = a1 * (a1 * rhs)
        x0 = a1 * rhs
        if alpha == minus_one:
            y = FQ2([0, 1]) * x0
        else:
            y = ((alpha + FQ2.one()) ** ((q - 1) // 2)) * x0
        if y * y == rhs:
            return [int(c) for c in x.coeffs], [int(c) for c in y.coeffs]
    raise AssertionError("no twist point found")


def test_b_outside_g2_subgroup_is_rejected(instance):
    (x0, x1), (y0, y1) = _twist_point_outside_subgroup()
    Q = g2_from_affine((x0, x1), (y0, y1))
    assert is_on_curve_g2(Q)
    assert not is_in_subgroup_g2(Q)
    assert is_in_subgroup_g2(g2_generator())
    assert is_in_subgroup_g2(instance.proof.B)

    blob = bytearray(instance.proof_bytes)
    blob[64:192] = b"".join(v.to_bytes(32, "big") for v in (x1, x0, y1, y0))
    with pytest.raises(ZKError, match="subgroup"):
        Proof.from_bytes(bytes(blob))
    with pytest.raises(ZKError, match="subgroup"):
        load_proof({"pi_a": ["1", "2"], "pi_b": [[str(x0), str(x1)], [str(y0), str(y1)]],
                    "pi_c": ["1", "2"]})
