import json

import pytest

from vault.errors import (DoubleSpend, InternalError, InvalidProof,
                          TransferFailed, UnknownRoot, VaultError,
                          VaultErrorCode, wrap)


def test_kinds_carry_stable_codes_and_data():
    err = DoubleSpend(nullifier_hash=b"\x01\x02")
    assert isinstance(err, VaultError)
    assert err.code == VaultErrorCode.DOUBLE_SPEND
    assert err.message == "nullifier already spent"
    assert err.data == {"nullifier_hash": "0x0102"}
    assert not err.retryable


def test_to_dict_is_json_safe():
    err = InvalidProof("pairing check failed", mode="pairing", inputs=(1, 2))
    d = err.to_dict()
    assert d["code"] == "VAULT/INVALID_PROOF"
    assert d["kind"] == "InvalidProof"
    assert d["data"] == {"mode": "pairing", "inputs": [1, 2]}
    json.dumps(d)


def test_with_context_returns_a_new_error():
    base = UnknownRoot(root="0x01")
    enriched = base.with_context(op="withdraw")
    assert type(enriched) is UnknownRoot
    assert enriched.data == {"root": "0x01", "op": "withdraw"}
    assert base.data == {"root": "0x01"}


def test_wrap_foreign_exception():
    cause = OSError("disk gone")
    err = wrap(cause, as_=TransferFailed, amount=5)
    assert isinstance(err, TransferFailed)
    assert err.cause is cause
    assert err.data == {"amount": 5}
    assert err.to_dict(include_cause=True)["cause"]["type"] == "OSError"
    assert isinstance(wrap(ValueError("x")), InternalError)


def test_wrap_vault_error_keeps_kind():
    err = wrap(DoubleSpend(), attempt=2)
    assert isinstance(err, DoubleSpend)
    assert err.data["attempt"] == 2


def test_errors_are_raisable_and_matchable():
    with pytest.raises(VaultError, match="VAULT/UNKNOWN_ROOT"):
        raise UnknownRoot()
