import logging

import pytest

from zk.tests import synthetic_groth16
from zk.verifiers import (VerifierMode, WithdrawalVerifier, ZKError,
                          build_fallback_proof, fallback_linkage, proof_hash)
from zk.verifiers import pairing_bn254
from zk.verifiers import groth16_bn254
from zk.verifiers.field import to_bytes32

ROOT = 0x1234
NULLIFIER = 0xBEEF
RECIPIENT = int("11" * 20, 16)
AMOUNT = 10**18
INPUTS = [ROOT, NULLIFIER, RECIPIENT, AMOUNT]


@pytest.fixture
def fallback():
    return WithdrawalVerifier()


def test_fallback_mode_warns_at_construction(caplog):
    with caplog.at_level(logging.WARNING, logger="zk.verifiers.withdrawal"):
        v = WithdrawalVerifier()
    assert v.mode is VerifierMode.FALLBACK
    assert any("FALLBACK" in r.getMessage() for r in caplog.records)


def test_fallback_proof_layout():
    proof = build_fallback_proof(*INPUTS)
    assert len(proof) == 97
    assert proof[0] == 1
    assert proof[1:33] == fallback_linkage(*INPUTS)
    assert proof[33:65] == to_bytes32(ROOT)
    assert proof[65:97] == to_bytes32(NULLIFIER)


def test_fallback_accepts_matching_proof(fallback):
    assert fallback.verify(build_fallback_proof(*INPUTS), INPUTS)


@pytest.mark.parametrize("offset", list(range(33, 97)))
def test_fallback_rejects_any_flipped_root_or_nullifier_byte(fallback, offset):
    proof = bytearray(build_fallback_proof(*INPUTS))
    proof[offset] ^= 0x01
    assert not fallback.verify_view(bytes(proof), INPUTS)


@pytest.mark.parametrize(
    "mutate,reason",
    [
        (lambda p: p[:96], "shorter"),
        (lambda p: b"\x02" + p[1:], "tag"),
        (lambda p: p[:1] + b"\x00" * 32 + p[33:], "linkage"),
    ],
)
def test_fallback_rejection_reasons(fallback, mutate, reason):
    res = fallback.check(mutate(build_fallback_proof(*INPUTS)), INPUTS)
    assert not res.ok
    assert reason in res.message


def test_fallback_ignores_trailing_padding(fallback):
    assert fallback.verify(build_fallback_proof(*INPUTS) + b"\x00" * 31, INPUTS)


def test_outcomes_are_recorded(fallback):
    proof = build_fallback_proof(*INPUTS)
    digest = proof_hash(proof, INPUTS)
    assert not fallback.is_proof_verified(digest)
    assert fallback.recorded(digest) is None

    first = fallback.check(proof, INPUTS)
    second = fallback.check(proof, INPUTS)
    assert first.ok and second.ok
    assert not first.cached and second.cached
    assert fallback.is_proof_verified(digest)

    bad_inputs = [ROOT + 1, NULLIFIER, RECIPIENT, AMOUNT]
    assert not fallback.verify(proof, bad_inputs)
    assert fallback.recorded(proof_hash(proof, bad_inputs)) is False


def test_outcome_record_can_be_capped():
    v = WithdrawalVerifier(max_records=2)
    pairs = []
    for i in range(3):
        inputs = [ROOT + i, NULLIFIER, RECIPIENT, AMOUNT]
        pairs.append((build_fallback_proof(*inputs), inputs))
    digests = [proof_hash(p, inputs) for p, inputs in pairs]

    v.check(*pairs[0])
    v.check(*pairs[1])
    assert v.check(*pairs[0]).cached
    v.check(*pairs[2])
    assert v.recorded(digests[1]) is None
    assert v.recorded(digests[0]) is True and v.recorded(digests[2]) is True

    again = v.check(*pairs[1])
    assert again.ok and not again.cached
    assert v.recorded(digests[0]) is None


def test_outcome_record_cap_must_be_positive(fallback):
    assert fallback.max_records is None
    with pytest.raises(ValueError):
        WithdrawalVerifier(max_records=0)


def test_verify_view_does_not_record(fallback):
    proof = build_fallback_proof(*INPUTS)
    assert fallback.verify_view(proof, INPUTS)
    assert fallback.recorded(proof_hash(proof, INPUTS)) is None


def test_proof_hash_binds_inputs():
    proof = build_fallback_proof(*INPUTS)
    assert proof_hash(proof, INPUTS) != proof_hash(proof, INPUTS[:3] + [AMOUNT + 1])
    assert proof_hash(proof, INPUTS) == proof_hash(proof, [to_bytes32(x) for x in INPUTS])


# ---- pairing mode ------------------------------------------------------------------------


@pytest.fixture(scope="module")
def instance():
    return synthetic_groth16(INPUTS, seed=11)


def test_pairing_mode_structural_rejections(instance):
    v = WithdrawalVerifier(instance.vk)
    assert v.mode is VerifierMode.PAIRING
    short = v.check(instance.proof_bytes[:255], INPUTS)
    assert not short.ok and "256" in short.message
    wrong_arity = v.check(instance.proof_bytes, INPUTS[:3])
    assert not wrong_arity.ok and "public inputs" in wrong_arity.message
    # a fallback-format proof is never accepted once a key is set
    assert not v.verify(build_fallback_proof(*INPUTS), INPUTS)


def test_set_verifying_key_only_once(instance):
    v = WithdrawalVerifier()
    v.set_verifying_key(instance.vk)
    assert v.mode is VerifierMode.PAIRING
    with pytest.raises(ZKError):
        v.set_verifying_key(instance.vk)


@pytest.mark.slow
def test_pairing_mode_accepts_and_is_idempotent(instance, monkeypatch):
    calls = {"n": 0}
    real = pairing_bn254.check_pairing_product

    def counting(pairs, **kw):
        calls["n"] += 1
        return real(pairs, **kw)

    monkeypatch.setattr(groth16_bn254, "check_pairing_product", counting)

    v = WithdrawalVerifier(instance.vk)
    assert v.verify(instance.proof_bytes, INPUTS) is True
    assert v.verify(instance.proof_bytes, INPUTS) is True
    assert v.verify(instance.proof_bytes, INPUTS) is True
    assert calls["n"] == 1
    assert v.is_proof_verified(proof_hash(instance.proof_bytes, INPUTS))


@pytest.mark.slow
def test_pairing_mode_rejects_other_inputs(instance):
    v = WithdrawalVerifier(instance.vk)
    other = [ROOT, NULLIFIER + 1, RECIPIENT, AMOUNT]
    assert v.verify(instance.proof_bytes, other) is False
    assert v.verify(instance.proof_bytes, other) is False
