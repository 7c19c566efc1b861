"""
Boundary encodings shared by the ledger, the CLI and the boundary codecs.

- Addresses are 20 bytes; as a public input they are left-padded to 32 bytes
  and read as a big-endian field element.
- Amounts are integers in base units (18 decimals); as a public input they are
  32-byte big-endian.
- Field values (commitments, nullifiers, roots) travel as 0x-prefixed 32-byte
  hex and are reduced mod P on the way in.
"""

from __future__ import annotations

from typing import Union

from zk.verifiers import ZKError
from zk.verifiers.field import parse_field, to_bytes32, to_hex

from .errors import InvalidRecipient

ADDRESS_BYTES = 20
ZERO_ADDRESS = bytes(ADDRESS_BYTES)
DECIMALS = 18

AddressLike = Union[str, bytes, bytearray]


def normalize_address(addr: AddressLike) -> bytes:
    """Return the 20 address bytes, raising InvalidRecipient when malformed."""
    if isinstance(addr, (bytes, bytearray)):
        b = bytes(addr)
    elif isinstance(addr, str):
        s = addr.strip()
        if s[:2] in ("0x", "0X"):
            s = s[2:]
        try:
            b = bytes.fromhex(s)
        except ValueError as e:
            raise InvalidRecipient(f"address is not hex: {addr!r}") from e
    else:
        raise InvalidRecipient(f"unsupported address type {type(addr).__name__}")
    if len(b) != ADDRESS_BYTES:
        raise InvalidRecipient("address must be 20 bytes", length=len(b))
    return b


def is_zero_address(addr: bytes) -> bool:
    return not any(addr)


def address_hex(addr: bytes) -> str:
    return "0x" + bytes(addr).hex()


def address_to_field(addr: AddressLike) -> int:
    """Left-pad to 32 bytes and read big-endian."""
    return int.from_bytes(normalize_address(addr).rjust(32, b"\x00"), "big")


def field_from_hex(value: Union[str, bytes, int]) -> int:
    """Parse a commitment/nullifier/root given as hex, raw bytes or int."""
    try:
        return parse_field(value)
    except ZKError as e:
        raise ValueError(str(e)) from e


def field_hex(value: int) -> str:
    return to_hex(value)


def amount_bytes32(value: int) -> bytes:
    if value < 0 or value >= 1 << 256:
        raise ValueError("amount does not fit 32 bytes")
    return int(value).to_bytes(32, "big")


def parse_units(text: str, decimals: int = DECIMALS) -> int:
    """
    "0.01" -> 10**16 with 18 decimals. Rejects negatives and excess precision.
    """
    s = str(text).strip()
    if not s or s.startswith("-"):
        raise ValueError(f"invalid amount {text!r}")
    whole, _, frac = s.partition(".")
    if not (whole or frac) or not (whole.isdigit() or whole == "") or not (frac.isdigit() or frac == ""):
        raise ValueError(f"invalid amount {text!r}")
    if len(frac) > decimals:
        raise ValueError(f"amount {text!r} has more than {decimals} decimals")
    return int(whole or "0") * 10 ** decimals + int(frac.ljust(decimals, "0") or "0")


def format_units(value: int, decimals: int = DECIMALS) -> str:
    whole, frac = divmod(int(value), 10 ** decimals)
    frac_s = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{whole}.{frac_s}" if frac_s else str(whole)


__all__ = [
    "ADDRESS_BYTES",
    "ZERO_ADDRESS",
    "DECIMALS",
    "normalize_address",
    "is_zero_address",
    "address_hex",
    "address_to_field",
    "field_from_hex",
    "field_hex",
    "amount_bytes32",
    "parse_units",
    "format_units",
    "to_bytes32",
]
