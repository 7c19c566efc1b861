import json

import pytest

from zk.verifiers.field import P
from zk.verifiers.poseidon import (DEFAULT_PARAMS, PoseidonParams, get_params,
                                   ledger_params, load_params_json, poseidon2,
                                   poseidon_hash, poseidon_permute, register_params)


def test_default_params_shape():
    p = get_params()
    assert (p.t, p.R_F, p.R_P, p.alpha) == (3, 8, 57, 5)
    assert len(p.rc) == 65
    # one constant row applied on every round
    assert all(row == p.rc[0] for row in p.rc)
    assert p.rc[0][0] == 0x0EE9A592BA9A9518D05986D656F40C2114C4993C11BB29938D21D47304CD8E6E


def test_poseidon2_deterministic_and_in_field():
    h = poseidon2(1, 2)
    assert h == poseidon2(1, 2)
    assert 0 <= h < P
    assert h != poseidon2(2, 1)
    assert h != poseidon2(1, 3)


def test_poseidon2_is_lane_zero_of_permutation():
    assert poseidon2(11, 22) == poseidon_permute([11, 22, 0], get_params())[0]


def test_inputs_reduced_mod_p():
    assert poseidon2(P + 4, 9) == poseidon2(4, 9)
    assert poseidon2(4, 2 * P + 9) == poseidon2(4, 9)


def test_poseidon_hash_arity():
    assert poseidon_hash([5]) == poseidon2(5, 0)
    assert poseidon_hash([5, 6]) == poseidon2(5, 6)
    with pytest.raises(ValueError):
        poseidon_hash([])
    with pytest.raises(ValueError):
        poseidon_hash([1, 2, 3])


def test_permute_rejects_wrong_width():
    with pytest.raises(ValueError):
        poseidon_permute([1, 2], get_params())


def test_validate_rejects_bad_params():
    good = ledger_params()
    with pytest.raises(ValueError):
        register_params("bad_rf", PoseidonParams(3, 7, 57, 5, good.mds, good.rc[:64]))
    with pytest.raises(ValueError):
        register_params("bad_alpha", PoseidonParams(3, 8, 57, 4, good.mds, good.rc))
    with pytest.raises(ValueError):
        register_params("bad_rc", PoseidonParams(3, 8, 57, 5, good.mds, good.rc[:10]))
    with pytest.raises(KeyError):
        get_params("bad_rf")


def test_load_params_json_round_trip(tmp_path):
    p = ledger_params()
    doc = {
        "t": p.t,
        "R_F": p.R_F,
        "R_P": p.R_P,
        "alpha": p.alpha,
        "mds": [[hex(v) for v in row] for row in p.mds],
        "rc": [[str(v) for v in row] for row in p.rc],
    }
    path = tmp_path / "copy_t3.json"
    path.write_text(json.dumps(doc), encoding="utf-8")
    loaded = load_params_json(str(path))
    assert loaded == p
    assert poseidon2(3, 4, params_name="copy_t3") == poseidon2(3, 4, params_name=DEFAULT_PARAMS)
