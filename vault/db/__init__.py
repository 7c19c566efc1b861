from __future__ import annotations

"""
vault.db
========

Thin facade for the key-value store behind the ledger and the association
registry.

URIs
----
- "sqlite:///path/to/vault.db"   -> SQLite file
- "memory://"                    -> private in-memory SQLite (tests, demos)
- bare path ending in ".db"      -> SQLite file

Example
-------
>>> from vault.db import open_kv
>>> kv = open_kv("memory://")
>>> with kv.batch() as b:
...     b.put(b"m:key", b"hello")
>>> kv.get(b"m:key")
b'hello'
"""

from typing import Tuple

from . import sqlite as _sqlite_backend
from .kv import KV, Batch, Prefix, ReadOnlyKV


def _parse_uri(uri: str) -> Tuple[str, str]:
    """Parse a DB URI into (backend, path)."""
    u = uri.strip()
    if u.startswith("sqlite:///"):
        return ("sqlite", u[len("sqlite:///"):])
    if u.startswith("memory://"):
        return ("memory", "")
    if u.endswith(".db"):
        return ("sqlite", u)
    raise ValueError(f"Unsupported DB URI: {uri!r}. Use sqlite:///path/to.db or memory://")


def open_kv(uri: str, create: bool = True) -> KV:
    """
    Open a KV database by URI. See module docstring for supported forms.

    Raises:
        ValueError for unsupported URIs.
        StorageError when the backend cannot be opened.
    """
    backend, target = _parse_uri(uri)
    if backend == "memory":
        return _sqlite_backend.open_sqlite_kv(":memory:", create=True)
    return _sqlite_backend.open_sqlite_kv(target, create=create)


__all__ = [
    "KV",
    "ReadOnlyKV",
    "Batch",
    "Prefix",
    "open_kv",
]
