from __future__ import annotations

"""
KV interface & namespace prefixes
=================================

Backend-agnostic Key-Value interface used by the ledger and the association
registry, plus the canonical key prefixes for the vault's logical buckets:

- DEPOSITS    (b"d:")  : commitment -> deposit record
- DEPOSITORS  (b"u:")  : depositor, be_u32(leaf) -> commitment
- LEAVES      (b"l:")  : be_u32(leaf) -> commitment (insertion order)
- NULLIFIERS  (b"n:")  : nullifier hash -> spend record
- EVENTS      (b"e:")  : be_u64(seq) -> event record
- PROVIDERS   (b"p:")  : provider id -> association provider record
- AUDIT       (b"a:")  : be_u64(index) -> audit entry record
- AUDIT_IDS   (b"i:")  : entry id -> be_u64(index)
- AUDIT_KEYS  (b"k:")  : be_u64(index) -> per-entry disclosure key
- META        (b"m:")  : tree snapshot, counters, schema version

Records are canonical CBOR (`dumps_record` / `loads_record`) so the bytes for a
given record are stable across processes.

Key building helpers
--------------------
- Prefix(ns=b"d") produces a prefix object:
    DEPOSITS.key(commitment32) -> b"d:" + len|data
- For integers use big-endian fixed-width encodings so keys sort numerically:
    be_u32(leaf_index), be_u64(seq)

Batching
--------
`KV.batch()` returns a context manager. Writes become visible together when
the block exits without an exception and are discarded otherwise:

>>> with kv.batch() as b:
...     b.put(DEPOSITS.key(b"a"), b"1")
...     b.delete(DEPOSITS.key(b"b"))
"""

from typing import (Any, Iterable, Iterator, Optional, Protocol, Tuple, Union,
                    runtime_checkable)

import cbor2

# ---------------------------------------------------------------------------
# Prefix helpers
# ---------------------------------------------------------------------------

NS_SEP = b":"  # namespace separator used only once after the leading ns byte


class Prefix:
    """
    Represents a logical namespace prefix (e.g., b"d:" for DEPOSITS).

    .raw gives the raw bytes prefix.
    .key(*parts) builds a composite key: prefix + sum of (uvarlen | part_bytes).
    """

    __slots__ = ("_raw",)

    def __init__(self, ns: Union[bytes, bytearray, memoryview, str]) -> None:
        if isinstance(ns, str):
            ns_b = ns.encode("ascii")
        else:
            ns_b = bytes(ns)
        if len(ns_b) == 0:
            raise ValueError("namespace must be non-empty")
        self._raw = ns_b.rstrip(NS_SEP) + NS_SEP

    @property
    def raw(self) -> bytes:
        return self._raw

    def key(self, *parts: Union[bytes, bytearray, memoryview, str, int]) -> bytes:
        """Build a composite key under this prefix."""
        out = bytearray(self._raw)
        for p in parts:
            pb = _part_to_bytes(p)
            out.extend(_uvarint_len(len(pb)))
            out.extend(pb)
        return bytes(out)


def _part_to_bytes(p: Union[bytes, bytearray, memoryview, str, int]) -> bytes:
    if isinstance(p, (bytes, bytearray, memoryview)):
        return bytes(p)
    if isinstance(p, str):
        return p.encode("utf-8")
    if isinstance(p, int):
        if p < 0:
            raise ValueError("negative ints not supported in key parts")
        return p.to_bytes(max(1, (p.bit_length() + 7) // 8), "big")
    raise TypeError(f"unsupported key part type: {type(p)!r}")


def _uvarint_len(n: int) -> bytes:
    """LEB128-like unsigned length prefix."""
    if n < 0:
        raise ValueError("length must be non-negative")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(0x80 | b)
        else:
            out.append(b)
            break
    return bytes(out)


def be_u32(n: int) -> bytes:
    if not (0 <= n < (1 << 32)):
        raise ValueError("be_u32 out of range")
    return n.to_bytes(4, "big")


def be_u64(n: int) -> bytes:
    if not (0 <= n < (1 << 64)):
        raise ValueError("be_u64 out of range")
    return n.to_bytes(8, "big")


DEPOSITS = Prefix(b"d")
DEPOSITORS = Prefix(b"u")
LEAVES = Prefix(b"l")
NULLIFIERS = Prefix(b"n")
EVENTS = Prefix(b"e")
PROVIDERS = Prefix(b"p")
AUDIT = Prefix(b"a")
AUDIT_IDS = Prefix(b"i")
AUDIT_KEYS = Prefix(b"k")
META = Prefix(b"m")


# ---------------------------------------------------------------------------
# Record encoding
# ---------------------------------------------------------------------------


def dumps_record(obj: Any) -> bytes:
    """Canonical CBOR bytes for a record (maps sorted, shortest ints)."""
    return cbor2.dumps(obj, canonical=True)


def loads_record(data: bytes) -> Any:
    return cbor2.loads(data)


# ---------------------------------------------------------------------------
# KV protocols & Batch
# ---------------------------------------------------------------------------


@runtime_checkable
class ReadOnlyKV(Protocol):
    """Minimal read-only KV surface."""

    def get(self, key: bytes) -> Optional[bytes]:
        """Fetch value or None if missing."""
        ...

    def has(self, key: bytes) -> bool:
        """Return True if key exists."""
        ...

    def iter_prefix(self, prefix: bytes) -> Iterator[Tuple[bytes, bytes]]:
        """
        Iterate over (key, value) pairs whose key begins with `prefix`,
        in lexicographic byte-order of keys.
        """
        ...

    def close(self) -> None:
        """Close resources (no-op for in-memory)."""
        ...


@runtime_checkable
class Batch(Protocol):
    """
    A write-batch context manager. Backend guarantees atomicity when exiting
    the context without exception. If an exception escapes, nothing is written.
    """

    def put(self, key: bytes, value: bytes) -> None: ...
    def delete(self, key: bytes) -> None: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...

    def __enter__(self) -> "Batch": ...
    def __exit__(self, exc_type, exc, tb) -> Optional[bool]: ...


@runtime_checkable
class KV(ReadOnlyKV, Protocol):
    """Full RW KV surface."""

    def put(self, key: bytes, value: bytes) -> None:
        """Persist (key,value). Overwrites if exists."""
        ...

    def delete(self, key: bytes) -> None:
        """Remove key if present (idempotent)."""
        ...

    def batch(self) -> Batch:
        """Return a new write batch."""
        ...


# ---------------------------------------------------------------------------
# Portable helpers built atop the interface
# ---------------------------------------------------------------------------


def get_record(kv: ReadOnlyKV, key: bytes) -> Optional[Any]:
    v = kv.get(key)
    return None if v is None else loads_record(v)


def iter_records(kv: ReadOnlyKV, prefix: bytes) -> Iterator[Tuple[bytes, Any]]:
    for k, v in kv.iter_prefix(prefix):
        yield k, loads_record(v)


def put_many(kv: KV, items: Iterable[Tuple[bytes, bytes]]) -> None:
    """Write many keys using a single batch."""
    with kv.batch() as b:
        for k, v in items:
            b.put(k, v)


__all__ = [
    # Protocols
    "ReadOnlyKV",
    "KV",
    "Batch",
    # Prefixes
    "Prefix",
    "DEPOSITS",
    "DEPOSITORS",
    "LEAVES",
    "NULLIFIERS",
    "EVENTS",
    "PROVIDERS",
    "AUDIT",
    "AUDIT_IDS",
    "AUDIT_KEYS",
    "META",
    # Records
    "dumps_record",
    "loads_record",
    "get_record",
    "iter_records",
    "put_many",
    # Encoders
    "be_u32",
    "be_u64",
]
