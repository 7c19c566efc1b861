import pytest

from zk.verifiers import ZKError
from zk.verifiers.field import (P, ZERO_BYTES32, from_bytes32, is_canonical_bytes,
                                parse_field, reduce, to_bytes32, to_hex)


def test_reduce_and_bytes32():
    assert reduce(P) == 0
    assert reduce(P + 5) == 5
    b = to_bytes32(P + 1)
    assert len(b) == 32 and b == (1).to_bytes(32, "big")
    assert from_bytes32(b) == 1
    assert to_bytes32(0) == ZERO_BYTES32


def test_from_bytes32_requires_exact_length():
    with pytest.raises(ZKError):
        from_bytes32(b"\x01" * 31)
    with pytest.raises(ZKError):
        from_bytes32(b"\x01" * 33)


def test_from_bytes32_reduces_non_canonical():
    raw = (P + 3).to_bytes(32, "big")
    assert not is_canonical_bytes(raw)
    assert from_bytes32(raw) == 3
    assert is_canonical_bytes(to_bytes32(3))


@pytest.mark.parametrize(
    "value,expected",
    [
        (7, 7),
        ("0x0a", 10),
        ("0A", 10),
        ("dec:12", 12),
        (b"\x01\x00", 256),
        ("", 0),
    ],
)
def test_parse_field_accepts(value, expected):
    assert parse_field(value) == expected


@pytest.mark.parametrize("value", [-1, True, "0xzz", b"\x00" * 33, 1.5, "0x" + "1" * 65])
def test_parse_field_rejects(value):
    with pytest.raises(ZKError):
        parse_field(value)


def test_to_hex_is_fixed_width():
    assert to_hex(5) == "0x" + "00" * 31 + "05"
    assert to_hex(P + 5) == to_hex(5)
    assert len(to_hex(P - 1)) == 66
